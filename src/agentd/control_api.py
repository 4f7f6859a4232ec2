"""
Control action handlers.

Thin dispatch layer shared by the remote RPC channel and the local HTTP
control server: each method takes parsed JSON fields, calls the launcher
or the session registry, and returns a JSON-ready result.

Failures that the caller should see as an HTTP error raise ControlError.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional

from .exceptions import ControlError
from .launcher import SessionLauncher, SpawnRequest, SpawnResult
from .logging_config import get_logger
from .protocols import RpcHandler
from .session_registry import SessionRegistry

logger = get_logger("control")

RPC_SPAWN_SESSION = "spawn-session"
RPC_STOP_SESSION = "stop-session"
RPC_STOP_DAEMON = "stop-daemon"

ShutdownRequester = Callable[[str, Optional[str]], bool]


def _session_identifier(params: Any) -> str:
    """Accept either a bare identifier or {"sessionId": ...}."""
    if isinstance(params, Mapping):
        value = params.get("sessionId") or params.get("pid")
    else:
        value = params
    if value is None or str(value).strip() == "":
        raise ControlError("sessionId is required")
    return str(value).strip()


class ControlSurface:
    """Operations exposed to the remote channel and the local CLI."""

    def __init__(
        self,
        launcher: SessionLauncher,
        registry: SessionRegistry,
        request_shutdown: ShutdownRequester,
    ):
        self.launcher = launcher
        self.registry = registry
        self._request_shutdown = request_shutdown

    # ---------------------------------------------------------------------------
    # Sessions
    # ---------------------------------------------------------------------------

    async def spawn_session(self, params: Mapping[str, Any]) -> dict:
        """Spawn a session; always answers with a SpawnResult dict."""
        if not isinstance(params, Mapping):
            raise ControlError("Spawn parameters must be an object")
        try:
            request = SpawnRequest.from_params(params)
        except ControlError as e:
            logger.warning(f"Rejected spawn request: {e}")
            return SpawnResult.error(str(e)).to_dict()
        result = await self.launcher.spawn_session(request)
        logger.debug(f"Spawn result: {result.type}")
        return result.to_dict()

    def stop_session(self, params: Any) -> bool:
        identifier = _session_identifier(params)
        logger.debug(f"Stop session request: {identifier}")
        return self.registry.stop(identifier)

    def report_session(self, session_id: str, metadata: Optional[Mapping[str, Any]]) -> dict:
        """A session process announcing its id (the report-back call).

        Raises:
            ControlError: If sessionId or metadata.hostPid is missing
        """
        if not session_id:
            raise ControlError("sessionId is required")
        metadata = dict(metadata or {})
        host_pid = metadata.get("hostPid")
        try:
            pid = int(host_pid)
        except (TypeError, ValueError):
            logger.warning(f"Session {session_id} reported without hostPid")
            raise ControlError("metadata.hostPid is required")

        session = self.registry.report_from_child(pid, session_id, metadata)
        return {"status": "ok", "pid": pid, "startedBy": session.started_by}

    def list_sessions(self) -> List[dict]:
        return [
            {
                "startedBy": s.started_by,
                "sessionId": s.session_id or f"PID-{s.pid}",
                "pid": s.pid,
                "tmuxSessionId": s.tmux_session_id,
            }
            for s in self.registry.all()
        ]

    # ---------------------------------------------------------------------------
    # Daemon
    # ---------------------------------------------------------------------------

    def request_remote_shutdown(self) -> dict:
        accepted = self._request_shutdown("remote", None)
        return {"message": "Daemon stop request acknowledged, starting shutdown sequence...", "accepted": accepted}

    def request_cli_shutdown(self) -> dict:
        accepted = self._request_shutdown("cli", None)
        return {"status": "stopping", "accepted": accepted}

    def rpc_handlers(self) -> Dict[str, RpcHandler]:
        """Handlers to register with the sync client."""

        async def spawn(params: Dict[str, Any]) -> Any:
            return await self.spawn_session(params or {})

        async def stop(params: Dict[str, Any]) -> Any:
            return self.stop_session(params)

        async def stop_daemon(params: Dict[str, Any]) -> Any:
            return self.request_remote_shutdown()

        return {
            RPC_SPAWN_SESSION: spawn,
            RPC_STOP_SESSION: stop,
            RPC_STOP_DAEMON: stop_daemon,
        }
