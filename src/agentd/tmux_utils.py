"""
tmux utilities for agentd.

Launching a session inside tmux keeps it reattachable across daemon
restarts. The daemon only needs two things from tmux: whether it is usable
at all, and a way to start a command in a fresh window while learning the
real PID of the process running in that window's pane.
"""

import os
import shlex
import shutil
import subprocess
from typing import Dict, List, Optional, Tuple

import libtmux
from libtmux.exc import LibTmuxException
from libtmux._internal.query_list import ObjectDoesNotExist

from .logging_config import get_logger
from .protocols import TmuxSpawnOptions, TmuxSpawnResult

logger = get_logger("tmux")

# Session created when "most recent session" is requested but none exists
DEFAULT_SESSION_NAME = "agentd"


def check_tmux() -> Tuple[bool, Optional[str], Optional[str]]:
    """Check if tmux is available and get its version.

    Returns:
        Tuple of (is_available, path, version)
    """
    path = shutil.which("tmux")
    if not path:
        return False, None, None

    try:
        result = subprocess.run(
            ["tmux", "-V"],
            capture_output=True,
            text=True,
            timeout=5
        )
        if result.returncode != 0:
            return False, path, None
        return True, path, result.stdout.strip()
    except (subprocess.SubprocessError, OSError):
        return False, path, None


class TmuxUtilities:
    """Production MultiplexerInterface backed by libtmux."""

    def __init__(self, socket_name: Optional[str] = None):
        """Initialize with optional socket name for test isolation.

        If no socket_name is provided, checks AGENTD_TMUX_SOCKET env var.
        """
        self._socket_name = socket_name or os.environ.get("AGENTD_TMUX_SOCKET")
        self._server: Optional[libtmux.Server] = None

    @property
    def server(self) -> libtmux.Server:
        """Lazy-load the tmux server connection."""
        if self._server is None:
            if self._socket_name:
                self._server = libtmux.Server(socket_name=self._socket_name)
            else:
                self._server = libtmux.Server()
        return self._server

    def is_available(self) -> bool:
        available, _, _ = check_tmux()
        return available

    def _most_recent_session(self) -> Optional[libtmux.Session]:
        sessions = list(self.server.sessions)
        if not sessions:
            return None

        def last_used(sess: libtmux.Session) -> int:
            for attr in ("session_last_attached", "session_activity"):
                value = getattr(sess, attr, None)
                if value:
                    try:
                        return int(value)
                    except ValueError:
                        continue
            return 0

        return max(sessions, key=last_used)

    def _resolve_session(self, options: TmuxSpawnOptions) -> libtmux.Session:
        if options.session_name:
            try:
                return self.server.sessions.get(session_name=options.session_name)
            except ObjectDoesNotExist:
                logger.debug(f"Creating tmux session '{options.session_name}'")
                return self.server.new_session(
                    session_name=options.session_name,
                    attach=False,
                    start_directory=options.cwd,
                )

        session = self._most_recent_session()
        if session is not None:
            return session
        logger.debug(f"No tmux sessions exist, creating '{DEFAULT_SESSION_NAME}'")
        return self.server.new_session(
            session_name=DEFAULT_SESSION_NAME,
            attach=False,
            start_directory=options.cwd,
        )

    def spawn_in_tmux(
        self,
        command: List[str],
        options: TmuxSpawnOptions,
        env: Dict[str, str],
    ) -> TmuxSpawnResult:
        """Start command in a new window with an explicit environment.

        The window shell execs the command, so the pane PID is the agent
        process itself rather than an intermediate shell.
        """
        try:
            session = self._resolve_session(options)
            window = session.new_window(
                window_name=options.window_name,
                start_directory=options.cwd,
                attach=False,
                window_shell=f"exec {shlex.join(command)}",
                environment=env,
            )
            pane = window.active_pane or (window.panes[0] if window.panes else None)
            if pane is None or not pane.pane_pid:
                return TmuxSpawnResult(
                    success=False,
                    error="tmux window created but no pane PID available",
                )
            pid = int(pane.pane_pid)
            session_id = f"{session.session_name}:{window.window_index}"
            logger.debug(f"Spawned '{options.window_name}' in tmux {session_id} (PID {pid})")
            return TmuxSpawnResult(success=True, session_id=session_id, pid=pid)
        except (LibTmuxException, ObjectDoesNotExist, ValueError, OSError) as e:
            return TmuxSpawnResult(success=False, error=str(e))
