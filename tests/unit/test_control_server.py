"""Tests for the local HTTP control server.

The server is started on a random localhost port and exercised with a
real aiohttp client.
"""

import asyncio

import aiohttp
import pytest

from agentd.control_api import ControlSurface
from agentd.control_server import ControlServer
from agentd.launcher import SessionLauncher
from agentd.session_registry import STARTED_BY_DAEMON


class ShutdownRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, source, message=None):
        self.calls.append(source)
        return True


@pytest.fixture
def shutdown():
    return ShutdownRecorder()


@pytest.fixture
def server(registry, tmux, fast_settings, process_factory, shutdown):
    launcher = SessionLauncher(
        registry, tmux, fast_settings, environ={}, process_factory=process_factory
    )
    return ControlServer(ControlSurface(launcher, registry, shutdown))


async def post(port, path, body=None, raw=None):
    if raw is not None:
        kwargs = {"data": raw, "headers": {"Content-Type": "application/json"}}
    else:
        kwargs = {"json": body}
    async with aiohttp.ClientSession() as session:
        async with session.post(f"http://127.0.0.1:{port}{path}", **kwargs) as resp:
            return resp.status, await resp.json()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_binds_random_port(self, server):
        port = await server.start()
        try:
            assert port > 0
            assert server.port == port
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_stop_twice(self, server):
        await server.start()
        await server.stop()
        await server.stop()

        assert server.runner is None


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_session_started_and_list(self, server):
        port = await server.start()
        try:
            status, reply = await post(port, "/session-started", {"sessionId": "ext", "metadata": {"hostPid": 99}})
            assert status == 200
            assert reply == {"status": "ok", "pid": 99, "startedBy": "external"}

            status, reply = await post(port, "/list")
            assert status == 200
            assert reply == {
                "children": [{"startedBy": "external", "sessionId": "ext", "pid": 99, "tmuxSessionId": None}]
            }
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_session_started_without_host_pid_is_400(self, server):
        port = await server.start()
        try:
            status, reply = await post(port, "/session-started", {"sessionId": "ext"})
        finally:
            await server.stop()

        assert status == 400
        assert "hostPid" in reply["error"]

    @pytest.mark.asyncio
    async def test_invalid_json_is_400(self, server):
        port = await server.start()
        try:
            status, reply = await post(port, "/stop-session", raw="{not json")
        finally:
            await server.stop()

        assert status == 400
        assert reply == {"error": "Invalid JSON body"}

    @pytest.mark.asyncio
    async def test_stop_session(self, server, process_control):
        process_control.alive.add(99)
        port = await server.start()
        try:
            await post(port, "/session-started", {"sessionId": "ext", "metadata": {"hostPid": 99}})
            _, first = await post(port, "/stop-session", {"sessionId": "ext"})
            _, second = await post(port, "/stop-session", {"sessionId": "ext"})
        finally:
            await server.stop()

        assert first == {"success": True}
        assert second == {"success": False}

    @pytest.mark.asyncio
    async def test_spawn_session(self, server, tmp_path):
        registry = server.surface.registry

        async def report_back():
            while True:
                for session in registry.all():
                    if session.started_by == STARTED_BY_DAEMON and session.session_id is None:
                        registry.report_from_child(session.pid, "spawned-1", {"hostPid": session.pid})
                        return
                await asyncio.sleep(0.005)

        port = await server.start()
        try:
            reporter = asyncio.create_task(report_back())
            status, reply = await post(port, "/spawn-session", {"directory": str(tmp_path)})
            await reporter
        finally:
            await server.stop()
            await server.surface.launcher.close()

        assert status == 200
        assert reply == {"type": "success", "sessionId": "spawned-1"}

    @pytest.mark.asyncio
    async def test_stop_requests_cli_shutdown(self, server, shutdown):
        port = await server.start()
        try:
            status, reply = await post(port, "/stop")
        finally:
            await server.stop()

        assert status == 200
        assert reply["status"] == "stopping"
        assert shutdown.calls == ["cli"]
