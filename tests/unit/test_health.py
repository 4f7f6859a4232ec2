"""Tests for the daemon health loop."""

import asyncio

import pytest

from agentd.daemon_state import DaemonPersistedState, read_daemon_state, write_daemon_state
from agentd.health import (
    STATE_AWAITING_EXTERNAL_TERMINATION,
    STATE_RUNNING,
    STATE_STOPPED,
    HealthLoop,
)
from agentd.session_registry import STARTED_BY_DAEMON, TrackedSession


def make_state(pid=4242, version="1.0.0"):
    return DaemonPersistedState(
        pid=pid,
        http_port=1234,
        start_time="2026-01-01T00:00:00",
        started_with_cli_version=version,
        daemon_log_path="/tmp/daemon.log",
    )


class Recorder:
    """Collects request_shutdown calls."""

    def __init__(self):
        self.calls = []

    def __call__(self, source, message=None):
        self.calls.append((source, message))
        return True


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "daemon.state.json"


@pytest.fixture
def shutdown():
    return Recorder()


@pytest.fixture
def make_loop(registry, process_control, state_path, shutdown):
    def factory(installed="1.0.0", **kwargs):
        state = make_state(pid=process_control.pid())
        write_daemon_state(state, state_path)
        return HealthLoop(
            registry,
            process_control,
            state,
            shutdown,
            state_path=state_path,
            version_reader=lambda: installed,
            **kwargs,
        )

    return factory


class TestTick:
    @pytest.mark.asyncio
    async def test_writes_heartbeat(self, make_loop, state_path):
        loop = make_loop()

        await loop.tick()

        on_disk = read_daemon_state(state_path)
        assert on_disk.last_heartbeat is not None
        assert on_disk.last_heartbeat == loop.daemon_state.last_heartbeat

    @pytest.mark.asyncio
    async def test_prunes_dead_sessions(self, make_loop, registry, process_control):
        process_control.alive.add(100)
        for pid in (100, 101):
            registry.upsert(pid, TrackedSession(pid=pid, started_by=STARTED_BY_DAEMON))

        await make_loop().tick()

        assert 100 in registry
        assert 101 not in registry

    @pytest.mark.asyncio
    async def test_ownership_conflict_requests_shutdown(self, make_loop, state_path, shutdown):
        loop = make_loop()
        write_daemon_state(make_state(pid=999), state_path)

        await loop.tick()

        assert len(shutdown.calls) == 1
        source, message = shutdown.calls[0]
        assert source == "exception"
        assert "different daemon" in message
        # The other daemon's state is left alone
        assert read_daemon_state(state_path).pid == 999
        assert read_daemon_state(state_path).last_heartbeat is None

    @pytest.mark.asyncio
    async def test_missing_state_file_is_not_a_conflict(self, make_loop, state_path, shutdown):
        loop = make_loop()
        state_path.unlink()

        await loop.tick()

        assert shutdown.calls == []
        assert read_daemon_state(state_path).last_heartbeat is not None

    @pytest.mark.asyncio
    async def test_version_drift_spawns_replacement_and_exits(self, make_loop, process_control, shutdown):
        loop = make_loop(installed="2.0.0", restart_hang_timeout=0.01)

        await loop.tick()

        assert loop.state == STATE_AWAITING_EXTERNAL_TERMINATION
        assert len(process_control.spawned) == 1
        command, _ = process_control.spawned[0]
        assert command[-2:] == ["daemon", "start"]
        assert process_control.exit_codes == [0]
        assert shutdown.calls == []

    @pytest.mark.asyncio
    async def test_version_drift_still_exits_if_spawn_fails(self, make_loop, process_control):
        process_control.fail_spawn = True
        loop = make_loop(installed="2.0.0", restart_hang_timeout=0.01)

        await loop.tick()

        assert process_control.exit_codes == [0]


class TestScheduling:
    @pytest.mark.asyncio
    async def test_overlapping_firing_is_skipped(self, make_loop):
        loop = make_loop()
        release = asyncio.Event()

        async def slow_tick():
            await release.wait()

        loop.tick = slow_tick

        first = loop.fire()
        await asyncio.sleep(0)
        second = loop.fire()
        release.set()
        await first
        third = loop.fire()
        await third

        assert second is None
        assert loop.fired_count == 3
        assert loop.executed_count == 2
        assert loop.skipped_count == 1

    @pytest.mark.asyncio
    async def test_failing_tick_is_contained(self, make_loop):
        loop = make_loop()

        async def broken_tick():
            raise RuntimeError("boom")

        loop.tick = broken_tick

        await loop.fire()
        task = loop.fire()

        assert task is not None
        await task

    @pytest.mark.asyncio
    async def test_timer_fires_until_stopped(self, make_loop, state_path):
        loop = make_loop(interval=0.01)

        loop.start()
        assert loop.state == STATE_RUNNING
        await asyncio.sleep(0.1)
        loop.stop()
        fired = loop.fired_count
        await asyncio.sleep(0.05)

        assert fired >= 2
        assert loop.fired_count == fired
        assert loop.state == STATE_STOPPED

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_timer(self, make_loop):
        loop = make_loop(interval=10)

        loop.start()
        timer = loop._timer
        loop.start()

        assert loop._timer is timer
        loop.stop()
