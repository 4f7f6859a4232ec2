"""
Self-update: install the latest agentd, then restart the daemon.

The update command comes from AGENTD_DAEMON_UPDATE_COMMAND, then the
``daemon.update_command`` config key, then DEFAULT_UPDATE_COMMAND.
"""

import os
import subprocess
from typing import Optional

from .config import get_update_command
from .control_client import stop_daemon
from .exceptions import AgentdError
from .logging_config import get_logger
from .protocols import ProcessControl
from .settings import get_cli_command

logger = get_logger("update")

DEFAULT_UPDATE_COMMAND = "pip install -U agentd"


class UpdateError(AgentdError):
    """Raised when the update command fails."""


def resolve_update_command() -> str:
    override = os.environ.get("AGENTD_DAEMON_UPDATE_COMMAND", "").strip()
    if override:
        return override
    return get_update_command(DEFAULT_UPDATE_COMMAND)


def run_update_command(command: str, quiet: bool = False) -> None:
    """Run command through the shell.

    Raises:
        UpdateError: If it cannot be started or exits non-zero
    """
    output = subprocess.DEVNULL if quiet else None
    try:
        result = subprocess.run(command, shell=True, stdout=output, stderr=output, env=os.environ.copy())
    except OSError as e:
        raise UpdateError(f"Update command could not be started: {e}") from e
    if result.returncode < 0:
        raise UpdateError(f"Update command terminated by signal {-result.returncode}")
    if result.returncode != 0:
        raise UpdateError(f"Update command exited with code {result.returncode}")


def run_daemon_update(
    quiet: bool = False,
    process_control: Optional[ProcessControl] = None,
) -> str:
    """Update, stop the running daemon and start a fresh one.

    The daemon is restarted even when the version did not change.

    Returns:
        The update command that was run
    """
    from .implementations import RealProcessControl

    process = process_control or RealProcessControl()
    command = resolve_update_command()
    logger.info(f"Running update command: {command}")
    run_update_command(command, quiet=quiet)

    stop_daemon()
    pid = process.spawn_detached(get_cli_command("daemon", "start-sync"), env=dict(os.environ))
    if pid is None:
        raise UpdateError("Failed to start the daemon after update")
    logger.info("Daemon restart requested")
    return command
