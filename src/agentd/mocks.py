"""
Mock implementations of protocol interfaces for testing.

These mocks let tests drive the daemon without sending real signals,
starting real processes, touching tmux or exiting the interpreter.
"""

import asyncio
import signal
from typing import Any, Dict, List, Optional, Set, Tuple

from .protocols import DaemonStateUpdater, RpcHandler, TmuxSpawnOptions, TmuxSpawnResult


class MockProcessControl:
    """Mock implementation of ProcessControl.

    ``alive`` is the set of PIDs that answer the liveness probe; killing a
    PID with SIGTERM/SIGKILL removes it from the set.
    """

    def __init__(self, own_pid: int = 4242, alive: Optional[Set[int]] = None):
        self.own_pid = own_pid
        self.alive: Set[int] = set(alive or ()) | {own_pid}
        self.kills: List[Tuple[int, int]] = []
        self.spawned: List[Tuple[List[str], Optional[Dict[str, str]]]] = []
        self.exit_codes: List[int] = []
        self.fail_kill = False
        self.fail_spawn = False
        self._next_pid = 50000

    def pid(self) -> int:
        return self.own_pid

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def kill(self, pid: int, sig: int) -> bool:
        self.kills.append((pid, sig))
        if self.fail_kill or pid not in self.alive:
            return False
        if sig in (signal.SIGTERM, signal.SIGKILL):
            self.alive.discard(pid)
        return True

    def spawn_detached(self, command: List[str], env: Optional[Dict[str, str]] = None) -> Optional[int]:
        self.spawned.append((list(command), env))
        if self.fail_spawn:
            return None
        self._next_pid += 1
        self.alive.add(self._next_pid)
        return self._next_pid

    def exit(self, code: int) -> None:
        self.exit_codes.append(code)

    @property
    def exited(self) -> bool:
        return bool(self.exit_codes)


class MockProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, pid: int):
        self.pid = pid
        self.returncode: Optional[int] = None
        self.signals: List[int] = []
        self._exited = asyncio.Event()

    def send_signal(self, sig: int) -> None:
        if self.returncode is not None:
            raise ProcessLookupError(self.pid)
        self.signals.append(sig)

    def finish(self, code: int = 0) -> None:
        """Simulate the child exiting."""
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class MockProcessFactory:
    """Replacement for asyncio.create_subprocess_exec."""

    def __init__(self, first_pid: int = 30000):
        self._next_pid = first_pid
        self.calls: List[Tuple[Tuple[str, ...], Dict[str, Any]]] = []
        self.processes: List[MockProcess] = []
        self.error: Optional[Exception] = None

    async def __call__(self, *command: str, **kwargs: Any) -> MockProcess:
        self.calls.append((command, kwargs))
        if self.error is not None:
            raise self.error
        self._next_pid += 1
        process = MockProcess(self._next_pid)
        self.processes.append(process)
        return process

    @property
    def last(self) -> Optional[MockProcess]:
        return self.processes[-1] if self.processes else None


class MockTmux:
    """Mock implementation of MultiplexerInterface."""

    def __init__(self, available: bool = True, first_pid: int = 40000):
        self.available = available
        self.fail_with: Optional[str] = None
        self.return_no_pid = False
        self.spawns: List[Tuple[List[str], TmuxSpawnOptions, Dict[str, str]]] = []
        self._next_pid = first_pid

    def is_available(self) -> bool:
        return self.available

    def spawn_in_tmux(
        self,
        command: List[str],
        options: TmuxSpawnOptions,
        env: Dict[str, str],
    ) -> TmuxSpawnResult:
        self.spawns.append((list(command), options, dict(env)))
        if self.fail_with is not None:
            return TmuxSpawnResult(success=False, error=self.fail_with)
        session_name = options.session_name or "recent"
        if self.return_no_pid:
            return TmuxSpawnResult(success=True, session_id=f"{session_name}:1")
        self._next_pid += 1
        return TmuxSpawnResult(
            success=True,
            session_id=f"{session_name}:{len(self.spawns)}",
            pid=self._next_pid,
        )


class MockSyncClient:
    """Mock implementation of SyncClient that records every call."""

    def __init__(self, acknowledge: bool = True, delay: float = 0.0):
        self.acknowledge = acknowledge
        self.delay = delay
        self.handlers: Dict[str, RpcHandler] = {}
        self.daemon_state: Optional[Dict[str, Any]] = None
        self.connected = False
        self.shutdown_called = False
        self.calls: List[str] = []

    def set_rpc_handlers(self, handlers: Dict[str, RpcHandler]) -> None:
        self.calls.append("set_rpc_handlers")
        self.handlers = dict(handlers)

    async def connect(self) -> None:
        self.calls.append("connect")
        self.connected = True

    async def update_daemon_state_once(self, updater: DaemonStateUpdater, timeout: float) -> bool:
        self.calls.append("update_daemon_state_once")
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.acknowledge:
            return False
        self.daemon_state = updater(self.daemon_state)
        return True

    async def shutdown(self) -> None:
        self.calls.append("shutdown")
        self.shutdown_called = True
        self.connected = False

    async def call(self, method: str, params: Any = None) -> Any:
        """Invoke a registered handler the way the remote side would."""
        return await self.handlers[method](params)
