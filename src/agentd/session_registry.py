"""
Session registry.

In-memory table of every agent session the daemon knows about, keyed by
OS PID, plus the pending correlations between a spawn call and the
session id the spawned process reports back later.

All methods are called from the daemon's event loop only.
"""

import asyncio
import signal
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .logging_config import get_logger
from .protocols import ProcessControl

logger = get_logger("registry")

STARTED_BY_DAEMON = "daemon"
STARTED_BY_EXTERNAL = "external"


@dataclass
class TrackedSession:
    """An agent session process known to the daemon.

    ``process`` is only set for sessions the daemon started itself as a
    plain child process; tmux and external sessions are tracked by PID.
    """

    pid: int
    started_by: str
    session_id: Optional[str] = None
    tmux_session_id: Optional[str] = None
    process: Optional[Any] = None
    directory_created: bool = False
    message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "startedBy": self.started_by,
            "sessionId": self.session_id,
            "tmuxSessionId": self.tmux_session_id,
            "directoryCreated": self.directory_created,
            "message": self.message,
            "metadata": self.metadata,
        }


class PendingCorrelation:
    """Result slot for one spawn call waiting on its session report."""

    def __init__(self, pid: int, timeout: float, loop: asyncio.AbstractEventLoop):
        self.pid = pid
        self.deadline = loop.time() + timeout
        self.future: asyncio.Future = loop.create_future()

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, session: TrackedSession) -> bool:
        if self.future.done():
            return False
        self.future.set_result(session)
        return True

    def cancel(self) -> bool:
        """Resolve as "no session"; the process itself is left alone."""
        if self.future.done():
            return False
        self.future.set_result(None)
        return True


class SessionRegistry:
    """Tracks sessions by PID and correlates spawns with session reports."""

    def __init__(self, process_control: ProcessControl):
        self._process = process_control
        self._sessions: Dict[int, TrackedSession] = {}
        self._pending: Dict[int, PendingCorrelation] = {}
        self._accepting_spawns = True

    # ------------------------------------------------------------------
    # Table operations
    # ------------------------------------------------------------------

    def upsert(self, pid: int, session: TrackedSession) -> None:
        if session.pid != pid:
            raise ValueError(f"Session PID {session.pid} does not match key {pid}")
        self._sessions[pid] = session

    def remove(self, pid: int) -> Optional[TrackedSession]:
        return self._sessions.pop(pid, None)

    def get(self, pid: int) -> Optional[TrackedSession]:
        return self._sessions.get(pid)

    def all(self) -> List[TrackedSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, pid: int) -> bool:
        return pid in self._sessions

    def find(self, identifier: str) -> Optional[TrackedSession]:
        """Look up by session id, "PID-<n>", or a bare PID."""
        pid: Optional[int] = None
        if identifier.startswith("PID-"):
            try:
                pid = int(identifier[4:])
            except ValueError:
                pid = None
        elif identifier.isdigit():
            pid = int(identifier)

        for session in self._sessions.values():
            if session.session_id == identifier:
                return session
            if pid is not None and session.pid == pid:
                return session
        return None

    # ------------------------------------------------------------------
    # Report-back and correlation
    # ------------------------------------------------------------------

    def report_from_child(
        self,
        pid: int,
        session_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TrackedSession:
        """Handle a session announcing itself.

        A daemon-started PID gets its identity and wakes the spawn call
        waiting on it. An unknown PID is adopted as an external session.
        Reports for a PID that is already correlated are ignored.
        """
        metadata = dict(metadata or {})
        existing = self._sessions.get(pid)

        if existing is None:
            session = TrackedSession(
                pid=pid,
                started_by=STARTED_BY_EXTERNAL,
                session_id=session_id,
                metadata=metadata,
            )
            self._sessions[pid] = session
            logger.debug(f"Registered externally-started session {session_id} (PID {pid})")
            return session

        if existing.started_by == STARTED_BY_EXTERNAL:
            existing.session_id = session_id
            existing.metadata = metadata
            logger.debug(f"Updated external session {session_id} (PID {pid})")
            return existing

        if existing.session_id is not None:
            logger.debug(
                f"PID {pid} already correlated with {existing.session_id}; ignoring report for {session_id}"
            )
            return existing

        existing.session_id = session_id
        existing.metadata = metadata
        logger.debug(f"Updated daemon-spawned session {session_id} (PID {pid})")

        pending = self._pending.pop(pid, None)
        if pending is not None and pending.resolve(existing):
            logger.debug(f"Resolved session awaiter for PID {pid}")
        return existing

    def register_pending(self, pid: int, timeout: float) -> PendingCorrelation:
        """Create the result slot for pid, replacing any previous one."""
        previous = self._pending.pop(pid, None)
        if previous is not None:
            previous.cancel()
        pending = PendingCorrelation(pid, timeout, asyncio.get_running_loop())
        self._pending[pid] = pending
        return pending

    def has_pending(self, pid: int) -> bool:
        return pid in self._pending

    @property
    def accepting_spawns(self) -> bool:
        """False once shutdown has released the pending spawns."""
        return self._accepting_spawns

    async def wait_for_session(self, pid: int, timeout: float) -> Optional[TrackedSession]:
        """Suspend until pid reports its session id or timeout expires.

        Returns:
            The correlated session, or None on timeout/cancellation
        """
        if not self._accepting_spawns:
            return None
        pending = self.register_pending(pid, timeout)
        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout)
        except asyncio.TimeoutError:
            pending.cancel()
            return None
        finally:
            if self._pending.get(pid) is pending:
                del self._pending[pid]

    def cancel_pending(self, pid: int) -> None:
        pending = self._pending.pop(pid, None)
        if pending is not None:
            pending.cancel()

    def cancel_all_pending(self) -> int:
        """Release every waiting spawn call and refuse new waits (used during shutdown)."""
        self._accepting_spawns = False
        count = 0
        for pid in list(self._pending):
            pending = self._pending.pop(pid)
            if pending.cancel():
                count += 1
        return count

    def release_to_external(self, pid: int) -> None:
        """Stop owning a session whose report never arrived in time.

        The process keeps running; a later report adopts it as external.
        """
        session = self._sessions.get(pid)
        if session is None or session.session_id is not None:
            return
        session.started_by = STARTED_BY_EXTERNAL
        session.process = None

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def stop(self, identifier: str) -> bool:
        """Signal a session with SIGTERM and stop tracking it.

        Best effort: the entry is removed even if the signal fails.

        Returns:
            False if no session matches identifier
        """
        session = self.find(identifier)
        if session is None:
            logger.debug(f"Session {identifier} not found")
            return False

        if session.started_by == STARTED_BY_DAEMON and session.process is not None:
            try:
                session.process.send_signal(signal.SIGTERM)
                logger.debug(f"Sent SIGTERM to daemon-spawned session {identifier}")
            except (ProcessLookupError, OSError) as e:
                logger.debug(f"Failed to kill session {identifier}: {e}")
        else:
            if self._process.kill(session.pid, signal.SIGTERM):
                logger.debug(f"Sent SIGTERM to session PID {session.pid}")
            else:
                logger.debug(f"Failed to signal session PID {session.pid}")

        self._sessions.pop(session.pid, None)
        self.cancel_pending(session.pid)
        logger.debug(f"Removed session {identifier} from tracking")
        return True

    def on_child_exited(self, pid: int) -> None:
        if self._sessions.pop(pid, None) is not None:
            logger.debug(f"Removing exited process PID {pid} from tracking")

    def prune_dead(self, is_alive: Optional[Callable[[int], bool]] = None) -> List[int]:
        """Drop sessions whose process no longer exists.

        Returns:
            PIDs that were removed
        """
        probe = is_alive or self._process.is_alive
        pruned = []
        for pid in list(self._sessions):
            if not probe(pid):
                del self._sessions[pid]
                pruned.append(pid)
                logger.debug(f"Removing stale session with PID {pid} (process no longer exists)")
        return pruned
