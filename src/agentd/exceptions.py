"""
Exception types raised inside agentd.
"""


class AgentdError(Exception):
    """Base class for all agentd errors."""


class TmuxNotFoundError(AgentdError):
    """Raised when tmux is required but not installed."""


class ProfileError(AgentdError):
    """Raised when the settings/profile file cannot be read."""


class DaemonNotRunningError(AgentdError):
    """Raised by the control client when no daemon answers."""


class ControlError(AgentdError):
    """Raised when a control action fails.

    ``status`` is the HTTP status code the control server replies with.
    """

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status
