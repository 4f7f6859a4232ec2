"""
Launcher for agent sessions spawned by the daemon.

A spawn request goes through four stages: directory resolution,
environment resolution, transport selection (tmux window or plain
detached process) and correlation with the session id that the new
process reports back to the daemon's control server.
"""

import asyncio
import errno
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .auth import build_auth_environment
from .environment import (
    describe_keys,
    expand_environment_variables,
    find_unexpanded_auth_variables,
    merge_environment,
    unexpanded_auth_error,
)
from .exceptions import ControlError
from .logging_config import get_logger
from .profiles import ProfileStore
from .protocols import MultiplexerInterface, TmuxSpawnOptions
from .session_registry import STARTED_BY_DAEMON, SessionRegistry, TrackedSession
from .settings import SUPPORTED_AGENTS, DaemonSettings, get_agent_command

logger = get_logger("launcher")

RESULT_SUCCESS = "success"
RESULT_REQUEST_APPROVAL = "requestToApproveDirectoryCreation"
RESULT_ERROR = "error"

# Presence (even empty) in the resolved environment selects tmux
TMUX_SESSION_VAR = "TMUX_SESSION_NAME"

ProcessFactory = Callable[..., Awaitable[Any]]


@dataclass
class SpawnRequest:
    """Parameters of one spawn call."""

    directory: str
    session_id: Optional[str] = None
    machine_id: Optional[str] = None
    approved_new_directory_creation: bool = True
    agent: str = "claude"
    token: Optional[str] = None
    # None = not supplied; {} = explicitly empty
    environment_variables: Optional[Dict[str, str]] = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "SpawnRequest":
        """Build from the camelCase parameters used on the wire.

        Raises:
            ControlError: If environmentVariables is present but not an object
        """
        env = params.get("environmentVariables")
        if env is not None:
            if not isinstance(env, Mapping):
                raise ControlError("environmentVariables must be an object")
            env = {str(k): str(v) for k, v in env.items()}
        approved = params.get("approvedNewDirectoryCreation")
        return cls(
            directory=str(params.get("directory") or ""),
            session_id=params.get("sessionId"),
            machine_id=params.get("machineId"),
            approved_new_directory_creation=True if approved is None else bool(approved),
            agent=params.get("agent") or "claude",
            token=params.get("token"),
            environment_variables=env,
        )


@dataclass
class SpawnResult:
    type: str
    session_id: Optional[str] = None
    directory: Optional[str] = None
    error_message: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, session_id: str, message: Optional[str] = None) -> "SpawnResult":
        return cls(type=RESULT_SUCCESS, session_id=session_id, message=message)

    @classmethod
    def request_approval(cls, directory: str) -> "SpawnResult":
        return cls(type=RESULT_REQUEST_APPROVAL, directory=directory)

    @classmethod
    def error(cls, error_message: str) -> "SpawnResult":
        return cls(type=RESULT_ERROR, error_message=error_message)

    @property
    def ok(self) -> bool:
        return self.type == RESULT_SUCCESS

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {"type": self.type}
        if self.type == RESULT_SUCCESS:
            data["sessionId"] = self.session_id
            if self.message:
                data["message"] = self.message
        elif self.type == RESULT_REQUEST_APPROVAL:
            data["directory"] = self.directory
        else:
            data["errorMessage"] = self.error_message
        return data


def describe_mkdir_error(directory: str, error: OSError) -> str:
    """Turn a failed mkdir into one message a user can act on."""
    message = f"Unable to create directory at '{directory}'. "
    code = error.errno
    if code in (errno.EACCES, errno.EPERM):
        message += (
            "Permission denied. You don't have write access to create a folder at this "
            "location. Try using a different path or check your permissions."
        )
    elif code in (errno.ENOTDIR, errno.EEXIST):
        message += (
            "A file already exists at this path or in the parent path. Cannot create a "
            "directory here. Please choose a different location."
        )
    elif code == errno.ENOSPC:
        message += "No space left on device. Your disk is full. Please free up some space and try again."
    elif code == errno.EROFS:
        message += (
            "The file system is read-only. Cannot create directories here. "
            "Please choose a writable location."
        )
    else:
        message += (
            f"System error: {error.strerror or error}. Please verify the path is valid "
            "and you have the necessary permissions."
        )
    return message


async def _default_process_factory(*command: str, **kwargs: Any) -> Any:
    return await asyncio.create_subprocess_exec(*command, **kwargs)


class SessionLauncher:
    """Spawns agent sessions and waits for them to report their identity."""

    def __init__(
        self,
        registry: SessionRegistry,
        tmux: MultiplexerInterface,
        settings: DaemonSettings,
        profiles: Optional[ProfileStore] = None,
        environ: Optional[Mapping[str, str]] = None,
        process_factory: Optional[ProcessFactory] = None,
        codex_home: Optional[Path] = None,
    ):
        """Initialize the launcher.

        Args:
            registry: Session table shared with the control surface
            tmux: tmux backend
            settings: Timing knobs (spawn_timeout is used here)
            profiles: Local profile store used when a request sends no environment
            environ: Daemon environment for ${VAR} expansion (default: os.environ)
            process_factory: Replacement for asyncio.create_subprocess_exec (testing)
            codex_home: Where Codex credentials are written
        """
        self.registry = registry
        self.tmux = tmux
        self.settings = settings
        self.profiles = profiles or ProfileStore()
        self._environ = environ
        self._process_factory = process_factory or _default_process_factory
        self._codex_home = codex_home
        self._watchers: set = set()

    @property
    def environ(self) -> Mapping[str, str]:
        return self._environ if self._environ is not None else os.environ

    async def spawn_session(self, request: SpawnRequest) -> SpawnResult:
        """Spawn one session and wait for it to report its session id.

        Never raises; every failure comes back as an error result.
        """
        logger.debug(
            f"Spawning session: directory={request.directory} agent={request.agent} "
            f"sessionId={request.session_id}"
        )
        try:
            return await self._spawn(request)
        except Exception as e:
            logger.debug(f"Failed to spawn session: {e}", exc_info=True)
            return SpawnResult.error(f"Failed to spawn session: {e}")

    async def _spawn(self, request: SpawnRequest) -> SpawnResult:
        if not self.registry.accepting_spawns:
            return SpawnResult.error("Daemon is shutting down")
        if request.agent not in SUPPORTED_AGENTS:
            return SpawnResult.error(
                f"Unsupported agent type: '{request.agent}'. "
                "Please update your CLI to the latest version."
            )
        if not request.directory:
            return SpawnResult.error("Directory is required")

        directory = os.path.expanduser(request.directory)
        directory_created = False
        if not os.path.isdir(directory):
            if not request.approved_new_directory_creation:
                logger.debug(f"Directory {directory} does not exist; requesting approval")
                return SpawnResult.request_approval(directory)
            try:
                await asyncio.to_thread(Path(directory).mkdir, parents=True, exist_ok=True)
            except OSError as e:
                message = describe_mkdir_error(directory, e)
                logger.warning(f"Directory creation failed: {message}")
                return SpawnResult.error(message)
            directory_created = True
            logger.debug(f"Created directory {directory}")

        env = await asyncio.to_thread(self.resolve_environment, request)

        problems = find_unexpanded_auth_variables(env, request.agent)
        if problems:
            message = unexpanded_auth_error(problems, request.agent)
            logger.warning(message)
            return SpawnResult.error(message)

        if TMUX_SESSION_VAR in env and await asyncio.to_thread(self.tmux.is_available):
            result = await self._spawn_in_tmux(request, directory, env, directory_created)
            if result is not None:
                return result
        elif TMUX_SESSION_VAR in env:
            logger.debug("tmux session name specified but tmux not available, using a plain process")

        return await self._spawn_process(request, directory, env, directory_created)

    def resolve_environment(self, request: SpawnRequest) -> Dict[str, str]:
        """Build the extra environment for a session (profile < auth, then expanded)."""
        if request.environment_variables is not None:
            profile_env = dict(request.environment_variables)
            logger.debug(f"Using environment from request: {describe_keys(profile_env)}")
        else:
            profile_env = self.profiles.get_active_profile_environment(request.agent)
            logger.debug(f"Using local profile environment: {describe_keys(profile_env)}")

        auth_env = build_auth_environment(request.agent, request.token, self._codex_home)
        merged = merge_environment(profile_env, auth_env)
        return expand_environment_variables(merged, self.environ)

    def _full_environment(self, env: Mapping[str, str]) -> Dict[str, str]:
        return {**self.environ, **env}

    async def _spawn_in_tmux(
        self,
        request: SpawnRequest,
        directory: str,
        env: Dict[str, str],
        directory_created: bool,
    ) -> Optional[SpawnResult]:
        """Try the tmux transport. Returns None to fall back to a plain process."""
        session_name = env[TMUX_SESSION_VAR]
        label = session_name or "current/most recent session"
        logger.debug(f"Attempting to spawn session in tmux: {label}")

        options = TmuxSpawnOptions(
            session_name=session_name,
            window_name=f"agentd-{int(time.time() * 1000)}-{request.agent}",
            cwd=directory,
        )
        result = await asyncio.to_thread(
            self.tmux.spawn_in_tmux,
            get_agent_command(request.agent),
            options,
            self._full_environment(env),
        )
        if not result.success or not result.pid:
            logger.debug(
                f"Failed to spawn in tmux: {result.error or 'no PID returned'}, "
                "falling back to a plain process"
            )
            return None

        target = session_name or (result.session_id or "").split(":")[0]
        attach_hint = f"Use 'tmux attach -t {target}' to view the session."
        if directory_created:
            message = (
                f"The path '{directory}' did not exist. We created a new folder and spawned "
                f"a new session in tmux session '{target}'. {attach_hint}"
            )
        else:
            message = f"Spawned new session in tmux session '{target}'. {attach_hint}"

        session = TrackedSession(
            pid=result.pid,
            started_by=STARTED_BY_DAEMON,
            tmux_session_id=result.session_id,
            directory_created=directory_created,
            message=message,
        )
        logger.debug(f"Spawned in tmux session {result.session_id}, PID {result.pid}")
        return await self._track_and_wait(session, " (tmux)")

    async def _spawn_process(
        self,
        request: SpawnRequest,
        directory: str,
        env: Dict[str, str],
        directory_created: bool,
    ) -> SpawnResult:
        logger.debug("Using plain process spawning")
        process = await self._process_factory(
            *get_agent_command(request.agent),
            cwd=directory,
            env=self._full_environment(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
        if not getattr(process, "pid", None):
            return SpawnResult.error("Failed to spawn agent process - no PID returned")
        logger.debug(f"Spawned process with PID {process.pid}")

        message = None
        if directory_created:
            message = f"The path '{directory}' did not exist. We created a new folder and spawned a new session there."

        session = TrackedSession(
            pid=process.pid,
            started_by=STARTED_BY_DAEMON,
            process=process,
            directory_created=directory_created,
            message=message,
        )
        self._watch(process)
        return await self._track_and_wait(session, "")

    def _watch(self, process: Any) -> None:
        """Remove the session from the registry once the child exits."""

        async def wait_for_exit() -> None:
            code = await process.wait()
            logger.debug(f"Child PID {process.pid} exited with code {code}")
            self.registry.on_child_exited(process.pid)

        task = asyncio.get_running_loop().create_task(wait_for_exit())
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def _track_and_wait(self, session: TrackedSession, suffix: str) -> SpawnResult:
        pid = session.pid

        # The child may have reported before we got here; keep its identity
        early = self.registry.get(pid)
        if early is not None and early.session_id is not None:
            session.session_id = early.session_id
            session.metadata = early.metadata
            self.registry.upsert(pid, session)
            logger.debug(f"Session {session.session_id} reported before tracking began")
            return SpawnResult.success(session.session_id, session.message)

        self.registry.upsert(pid, session)
        logger.debug(f"Waiting for session report from PID {pid}{suffix}")

        completed = await self.registry.wait_for_session(pid, self.settings.spawn_timeout)
        if completed is None or completed.session_id is None:
            self.registry.release_to_external(pid)
            logger.debug(f"Session webhook timeout for PID {pid}{suffix}")
            return SpawnResult.error(f"Session webhook timeout for PID {pid}{suffix}")

        logger.debug(f"Session {completed.session_id} fully spawned{suffix}")
        return SpawnResult.success(completed.session_id, completed.message)

    async def close(self) -> None:
        """Stop watching children; the children themselves keep running."""
        for task in list(self._watchers):
            task.cancel()
        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)
        self._watchers.clear()
