"""
PID and lock-file helpers.

The daemon lock is an exclusive-create sentinel: whoever manages to
create the file with O_CREAT | O_EXCL owns the machine's daemon slot.
The holder's PID is written into it so a crashed holder can be detected
and its stale lock reclaimed. Every change to the lock file happens while
holding an flock on a companion ".guard" file, which keeps stale-lock
takeover atomic between contenders.
"""

import errno
import fcntl
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple

from .logging_config import get_logger

logger = get_logger("lock")


def is_pid_alive(pid: int) -> bool:
    """Check whether a process exists (signal 0 does not kill)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except OSError:
        return False


def read_pid_file(pid_file: Path) -> Optional[int]:
    """Read a PID from a file. Returns None if missing or invalid."""
    try:
        content = pid_file.read_text().strip()
        return int(content) if content else None
    except (OSError, ValueError):
        return None


def write_pid_file(pid_file: Path, pid: Optional[int] = None) -> None:
    """Write a PID (default: this process) to a file."""
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(pid if pid is not None else os.getpid()))


def remove_pid_file(pid_file: Path) -> None:
    """Remove a PID/lock file, ignoring absence."""
    try:
        pid_file.unlink()
    except FileNotFoundError:
        pass


@dataclass
class DaemonLock:
    """Handle for an acquired daemon lock."""

    path: Path
    pid: int
    acquired_at: float = field(default_factory=time.time)
    released: bool = False


def _try_create(lock_path: Path, pid: int) -> bool:
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except FileExistsError:
        return False
    try:
        os.write(fd, str(pid).encode())
    finally:
        os.close(fd)
    return True


def guard_path(lock_path: Path) -> Path:
    """Companion file whose flock serializes every change to the lock."""
    return lock_path.with_name(lock_path.name + ".guard")


@contextmanager
def _lock_guard(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive flock on the guard file (blocking)."""
    fd = os.open(guard_path(lock_path), os.O_CREAT | os.O_RDWR, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def _attempt(
    lock_path: Path,
    pid: int,
    is_alive: Callable[[int], bool],
    seen_unreadable: bool,
) -> Tuple[bool, bool]:
    """One acquisition attempt under the guard.

    Returns:
        (acquired, lock_was_unreadable)
    """
    with _lock_guard(lock_path):
        if _try_create(lock_path, pid):
            return True, False

        holder = read_pid_file(lock_path)
        if holder is not None and holder != pid and not is_alive(holder):
            logger.debug(f"Removing stale daemon lock held by dead PID {holder}")
            remove_pid_file(lock_path)
            return _try_create(lock_path, pid), False
        if holder is None and lock_path.exists():
            # Holder may be an older writer between create and write; reclaim on second sighting
            if seen_unreadable:
                logger.debug("Removing unreadable daemon lock")
                remove_pid_file(lock_path)
                return _try_create(lock_path, pid), False
            return False, True
        return False, False


def acquire_daemon_lock(
    lock_path: Path,
    max_retries: int = 5,
    retry_delay: float = 0.2,
    pid: Optional[int] = None,
    is_alive: Callable[[int], bool] = is_pid_alive,
) -> Optional[DaemonLock]:
    """Atomically acquire the daemon lock.

    Creation, stale-holder takeover and release all happen while holding
    the guard flock, so two contenders can never both reclaim the same
    dead holder's lock.

    Args:
        lock_path: Lock file location
        max_retries: Extra attempts after the first one fails
        retry_delay: Seconds between attempts
        pid: PID to record (defaults to this process)
        is_alive: Liveness probe used to detect stale locks

    Returns:
        DaemonLock on success, None if another live holder keeps it.
        None means "another daemon is running", not an error.
    """
    pid = pid if pid is not None else os.getpid()
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    seen_unreadable = False

    for attempt in range(max_retries + 1):
        try:
            acquired, unreadable = _attempt(lock_path, pid, is_alive, seen_unreadable)
        except OSError as e:
            if e.errno not in (errno.EACCES, errno.EAGAIN):
                raise
            logger.debug(f"Lock attempt {attempt + 1} failed: {e}")
            acquired, unreadable = False, False

        if acquired:
            logger.debug(f"Acquired daemon lock {lock_path} for PID {pid}")
            return DaemonLock(path=lock_path, pid=pid)
        seen_unreadable = seen_unreadable or unreadable

        if attempt < max_retries:
            time.sleep(retry_delay)

    holder = read_pid_file(lock_path)
    logger.debug(f"Daemon lock unavailable (held by PID {holder})")
    return None


def release_daemon_lock(lock: DaemonLock) -> None:
    """Release a previously acquired lock. Second release is a no-op."""
    if lock.released:
        return
    lock.released = True
    with _lock_guard(lock.path):
        holder = read_pid_file(lock.path)
        if holder is not None and holder != lock.pid:
            logger.warning(f"Lock file now belongs to PID {holder}; leaving it in place")
            return
        remove_pid_file(lock.path)
    logger.debug(f"Released daemon lock {lock.path}")
