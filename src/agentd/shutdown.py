"""
Daemon shutdown state machine.

Every way of stopping the daemon (OS signal, remote request, local CLI,
fatal error) funnels into one ShutdownRequest; the first one wins and
later ones are logged and ignored. The teardown that follows always runs
the same ordered steps and always ends in a process exit.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from .daemon_state import now_timestamp
from .exceptions import AgentdError
from .logging_config import get_logger
from .protocols import ProcessControl

logger = get_logger("shutdown")

SOURCE_OS_SIGNAL = "os-signal"
SOURCE_REMOTE = "remote"
SOURCE_CLI = "cli"
SOURCE_EXCEPTION = "exception"

SHUTDOWN_SOURCES = (SOURCE_OS_SIGNAL, SOURCE_REMOTE, SOURCE_CLI, SOURCE_EXCEPTION)

TeardownAction = Callable[[], Union[None, Awaitable[Any]]]
TeardownStep = Tuple[str, TeardownAction]


class DaemonPhase(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    STOPPED = "stopped"


@dataclass
class ShutdownRequest:
    source: str
    error_message: Optional[str] = None
    requested_at: str = field(default_factory=now_timestamp)


class ShutdownCoordinator:
    """Collects shutdown triggers and runs the terminal teardown."""

    def __init__(self, process_control: ProcessControl, startup_fallback_timeout: float = 1.0):
        self._process = process_control
        self.startup_fallback_timeout = startup_fallback_timeout
        self.phase = DaemonPhase.STARTING
        self.request: Optional[ShutdownRequest] = None
        self.completed_steps: List[str] = []
        self._requested = asyncio.Event()
        self._fallback_timer: Optional[asyncio.TimerHandle] = None

    @property
    def shutdown_requested(self) -> bool:
        return self.request is not None

    def request_shutdown(self, source: str, error_message: Optional[str] = None) -> bool:
        """Record a shutdown trigger.

        Returns:
            True if this call won, False if shutdown was already requested
        """
        if source not in SHUTDOWN_SOURCES:
            raise ValueError(f"Unknown shutdown source: {source}")

        if self.request is not None:
            logger.debug(
                f"Shutdown already requested by {self.request.source}; ignoring {source}"
            )
            return False

        logger.info(f"Requesting shutdown (source: {source}, error: {error_message})")
        self.request = ShutdownRequest(source=source, error_message=error_message)

        if self.phase == DaemonPhase.STARTING:
            # Startup may be wedged; don't rely on it reaching the teardown
            loop = asyncio.get_running_loop()
            self._fallback_timer = loop.call_later(
                self.startup_fallback_timeout, self._force_exit
            )

        self._requested.set()
        return True

    def _force_exit(self) -> None:
        logger.error("Startup did not complete after shutdown request; forcing exit")
        self._process.exit(1)

    def mark_started(self) -> None:
        if self.phase == DaemonPhase.STARTING:
            self.phase = DaemonPhase.RUNNING
            logger.debug("Daemon started successfully, waiting for shutdown request")

    async def wait_for_request(self) -> ShutdownRequest:
        await self._requested.wait()
        if self.request is None:
            raise AgentdError("Shutdown event set without a request")
        return self.request

    def cancel_fallback_timer(self) -> None:
        if self._fallback_timer is not None:
            self._fallback_timer.cancel()
            self._fallback_timer = None

    async def run_teardown(self, steps: List[TeardownStep], exit_code: int = 0) -> None:
        """Run teardown steps in order, then exit the process.

        A failing step is logged and the next one still runs.
        """
        self.cancel_fallback_timer()
        self.phase = DaemonPhase.SHUTTING_DOWN
        source = self.request.source if self.request else "unknown"
        logger.info(f"Starting cleanup (source: {source})")

        for name, action in steps:
            try:
                result = action()
                if inspect.isawaitable(result):
                    await result
                self.completed_steps.append(name)
                logger.debug(f"Teardown step done: {name}")
            except Exception as e:
                logger.warning(f"Teardown step '{name}' failed: {e}", exc_info=True)

        self.phase = DaemonPhase.STOPPED
        logger.info("Cleanup completed, exiting process")
        self._process.exit(exit_code)
