"""
Client for the daemon's local control server.

Used by the CLI and by a starting daemon to discover, query and stop the
instance that is already running. The daemon is found through the state
file, which records its PID and control port.
"""

import json
import os
import signal
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .daemon_state import DaemonPersistedState, clear_daemon_state, read_daemon_state
from .exceptions import ControlError, DaemonNotRunningError
from .logging_config import get_logger
from .pid_utils import is_pid_alive
from .settings import get_installed_version

logger = get_logger("control_client")

DEFAULT_TIMEOUT = 5.0
# A spawn waits for the session to report back, so allow for that
SPAWN_TIMEOUT = 30.0


def _post(
    port: int,
    path: str,
    body: Optional[Dict[str, Any]] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any:
    """POST JSON to the control server and return the decoded reply.

    Raises:
        DaemonNotRunningError: If the server cannot be reached
        ControlError: If the server rejected the request
    """
    url = f"http://127.0.0.1:{port}{path}"
    data = json.dumps(body or {}).encode("utf-8")
    req = Request(url, data=data, method="POST")
    req.add_header("Content-Type", "application/json")
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except HTTPError as e:
        try:
            message = json.loads(e.read().decode("utf-8")).get("error") or str(e)
        except (ValueError, AttributeError):
            message = str(e)
        raise ControlError(message, status=e.code) from e
    except (URLError, OSError, json.JSONDecodeError) as e:
        raise DaemonNotRunningError(f"Control server at port {port} not reachable: {e}") from e


def _running_state(state_path: Optional[Path] = None) -> DaemonPersistedState:
    state = read_daemon_state(state_path)
    if state is None or not is_pid_alive(state.pid):
        raise DaemonNotRunningError("No daemon running")
    return state


def check_if_daemon_running_and_clean_stale_state(
    state_path: Optional[Path] = None,
    is_alive: Callable[[int], bool] = is_pid_alive,
) -> bool:
    """Check if a daemon is alive; delete the state file if it is stale."""
    state = read_daemon_state(state_path)
    if state is None:
        return False
    if is_alive(state.pid):
        return True
    logger.debug(f"Daemon PID {state.pid} not running, cleaning up stale state")
    clear_daemon_state(state_path)
    return False


def is_daemon_running_current_version(
    state_path: Optional[Path] = None,
    is_alive: Callable[[int], bool] = is_pid_alive,
) -> bool:
    """True if a daemon is running and was started from the installed version."""
    if not check_if_daemon_running_and_clean_stale_state(state_path, is_alive):
        return False
    state = read_daemon_state(state_path)
    if state is None:
        return False
    current = get_installed_version()
    logger.debug(f"Running daemon version {state.started_with_cli_version}, installed {current}")
    return state.started_with_cli_version == current


def _wait_for_exit(pid: int, timeout: float, is_alive: Callable[[int], bool]) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_alive(pid):
            return True
        time.sleep(0.1)
    return not is_alive(pid)


def stop_daemon(
    state_path: Optional[Path] = None,
    timeout: float = DEFAULT_TIMEOUT,
    is_alive: Callable[[int], bool] = is_pid_alive,
) -> bool:
    """Stop the running daemon.

    Asks it to shut down over HTTP first, then falls back to SIGTERM.

    Returns:
        True if a daemon was running and is gone now
    """
    state = read_daemon_state(state_path)
    if state is None:
        logger.debug("No daemon state found, nothing to stop")
        return False

    pid = state.pid
    if not is_alive(pid):
        clear_daemon_state(state_path)
        return False

    try:
        _post(state.http_port, "/stop", timeout=timeout)
        logger.debug(f"Requested graceful shutdown of daemon PID {pid}")
    except DaemonNotRunningError as e:
        logger.debug(f"Graceful stop request failed: {e}")

    stopped = _wait_for_exit(pid, timeout, is_alive)
    if not stopped:
        logger.debug(f"Daemon PID {pid} still alive, sending SIGTERM")
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(f"Failed to signal daemon PID {pid}: {e}")
        stopped = _wait_for_exit(pid, timeout, is_alive)

    if stopped:
        # A killed daemon cannot clean up after itself
        clear_daemon_state(state_path)
    return stopped


def list_daemon_sessions(state_path: Optional[Path] = None) -> List[dict]:
    state = _running_state(state_path)
    reply = _post(state.http_port, "/list")
    return list(reply.get("children", []))


def stop_daemon_session(session_id: str, state_path: Optional[Path] = None) -> bool:
    state = _running_state(state_path)
    reply = _post(state.http_port, "/stop-session", {"sessionId": session_id})
    return bool(reply.get("success"))


def notify_daemon_session_started(
    session_id: str,
    metadata: Dict[str, Any],
    state_path: Optional[Path] = None,
) -> dict:
    """Tell the daemon which session id this process runs (report-back)."""
    state = _running_state(state_path)
    return _post(
        state.http_port,
        "/session-started",
        {"sessionId": session_id, "metadata": metadata},
    )


def spawn_daemon_session(
    directory: str,
    session_id: Optional[str] = None,
    agent: str = "claude",
    approved_new_directory_creation: bool = True,
    environment_variables: Optional[Dict[str, str]] = None,
    state_path: Optional[Path] = None,
) -> dict:
    state = _running_state(state_path)
    body: Dict[str, Any] = {
        "directory": directory,
        "agent": agent,
        "approvedNewDirectoryCreation": approved_new_directory_creation,
    }
    if session_id:
        body["sessionId"] = session_id
    if environment_variables is not None:
        body["environmentVariables"] = environment_variables
    return _post(state.http_port, "/spawn-session", body, timeout=SPAWN_TIMEOUT)
