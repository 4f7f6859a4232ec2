"""
Local HTTP control server for the daemon.

Binds to 127.0.0.1 on a random port (published in the daemon state file)
and serves JSON POST endpoints used by the CLI and by spawned sessions
reporting back their session id.

Endpoints:
    POST /session-started   {"sessionId", "metadata": {"hostPid", ...}}
    POST /list              -> {"children": [...]}
    POST /stop-session      {"sessionId"} -> {"success": bool}
    POST /spawn-session     {"directory", ...} -> SpawnResult
    POST /stop              -> {"status": "stopping"}
"""

import json
from typing import Awaitable, Callable, Optional

from aiohttp import web

from .control_api import ControlSurface
from .exceptions import ControlError
from .logging_config import get_logger

logger = get_logger("control_server")

LOCALHOST = "127.0.0.1"
# Upper bound on waiting for in-flight handlers when the server stops
SHUTDOWN_TIMEOUT = 2.0

Handler = Callable[[web.Request], Awaitable[web.Response]]


async def _read_json_body(request: web.Request) -> dict:
    """Parse the request body; an empty body is an empty object."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ControlError("Invalid JSON body")
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ControlError("JSON body must be an object")
    return body


def _json_errors(handler: Handler) -> Handler:
    """Turn ControlError into a JSON error response."""

    async def wrapped(request: web.Request) -> web.Response:
        try:
            return await handler(request)
        except ControlError as e:
            return web.json_response({"error": str(e)}, status=e.status)

    return wrapped


class ControlServer:
    """aiohttp application exposing a ControlSurface on localhost."""

    def __init__(self, surface: ControlSurface, host: str = LOCALHOST, port: int = 0):
        self.surface = surface
        self.host = host
        self.port = port
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_post("/session-started", _json_errors(self.session_started))
        self.app.router.add_post("/list", _json_errors(self.list_sessions))
        self.app.router.add_post("/stop-session", _json_errors(self.stop_session))
        self.app.router.add_post("/spawn-session", _json_errors(self.spawn_session))
        self.app.router.add_post("/stop", _json_errors(self.stop_daemon))

    async def session_started(self, request: web.Request) -> web.Response:
        body = await _read_json_body(request)
        result = self.surface.report_session(body.get("sessionId"), body.get("metadata"))
        return web.json_response(result)

    async def list_sessions(self, _: web.Request) -> web.Response:
        return web.json_response({"children": self.surface.list_sessions()})

    async def stop_session(self, request: web.Request) -> web.Response:
        body = await _read_json_body(request)
        return web.json_response({"success": self.surface.stop_session(body)})

    async def spawn_session(self, request: web.Request) -> web.Response:
        body = await _read_json_body(request)
        result = await self.surface.spawn_session(body)
        return web.json_response(result)

    async def stop_daemon(self, _: web.Request) -> web.Response:
        return web.json_response(self.surface.request_cli_shutdown())

    async def start(self) -> int:
        """Start listening. Returns the bound port."""
        self.runner = web.AppRunner(self.app, access_log=None, shutdown_timeout=SHUTDOWN_TIMEOUT)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        addresses = self.runner.addresses
        if addresses:
            self.port = addresses[0][1]
        logger.info(f"Control server listening on http://{self.host}:{self.port}")
        return self.port

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            logger.debug("Control server stopped")
