"""
Real implementations of protocol interfaces.

These are production implementations that send real signals, start real
processes and exit the real interpreter.
"""

import logging
import os
import subprocess
import sys
from typing import Any, Dict, List, Optional

from .logging_config import get_logger
from .pid_utils import is_pid_alive
from .protocols import DaemonStateUpdater, RpcHandler

logger = get_logger("process")


class RealProcessControl:
    """Production implementation of ProcessControl."""

    def pid(self) -> int:
        return os.getpid()

    def is_alive(self, pid: int) -> bool:
        return is_pid_alive(pid)

    def kill(self, pid: int, sig: int) -> bool:
        try:
            os.kill(pid, sig)
            return True
        except OSError as e:
            logger.debug(f"Failed to signal PID {pid}: {e}")
            return False

    def spawn_detached(self, command: List[str], env: Optional[Dict[str, str]] = None) -> Optional[int]:
        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                env=env,
                start_new_session=True,
            )
            return proc.pid
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Failed to spawn {command[0]}: {e}")
            return None

    def exit(self, code: int) -> None:
        logger.debug(f"Process exiting with code {code}")
        logging.shutdown()
        sys.stdout.flush()
        sys.stderr.flush()
        os._exit(code)


class OfflineSyncClient:
    """SyncClient used when no remote channel is configured.

    Keeps the handlers and the last pushed state locally so the daemon is
    fully usable through the local control server alone.
    """

    def __init__(self) -> None:
        self.handlers: Dict[str, RpcHandler] = {}
        self.daemon_state: Optional[Dict[str, Any]] = None
        self.connected = False

    def set_rpc_handlers(self, handlers: Dict[str, RpcHandler]) -> None:
        self.handlers = dict(handlers)
        logger.debug(f"Registered RPC handlers: {', '.join(sorted(handlers))}")

    async def connect(self) -> None:
        self.connected = True
        logger.info("No remote sync channel configured; serving local control API only")

    async def update_daemon_state_once(self, updater: DaemonStateUpdater, timeout: float) -> bool:
        self.daemon_state = updater(self.daemon_state)
        return True

    async def shutdown(self) -> None:
        self.connected = False
