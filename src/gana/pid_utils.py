"""
PID file and daemon lock helpers.

The daemon singleton is an flock on ``<pid_file>.lock`` held for the life of
the process. The kernel drops the lock when the process exits or crashes, so
a stale PID file never blocks a new daemon.
"""

import fcntl
import os
import signal
import time
from pathlib import Path
from typing import Dict, Optional, Tuple


# Lock file descriptors held by this process, keyed by PID file path
_held_locks: Dict[Path, int] = {}


def _read_pid(pid_file: Path) -> Optional[int]:
    try:
        return int(pid_file.read_text().strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
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


def is_process_running(pid_file: Path) -> bool:
    """Check whether the process named in a PID file is alive."""
    return get_process_pid(pid_file) is not None


def get_process_pid(pid_file: Path) -> Optional[int]:
    """Get the PID from a PID file if that process is alive."""
    pid_file = Path(pid_file)
    if not pid_file.exists():
        return None
    pid = _read_pid(pid_file)
    if pid is None or not _pid_alive(pid):
        return None
    return pid


def write_pid_file(pid_file: Path, pid: Optional[int] = None) -> None:
    """Write a PID (default: the current process), creating parent directories."""
    pid_file = Path(pid_file)
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(pid if pid is not None else os.getpid()))


def remove_pid_file(pid_file: Path) -> None:
    """Remove a PID file if present."""
    try:
        Path(pid_file).unlink()
    except FileNotFoundError:
        pass


def _lock_path(pid_file: Path) -> Path:
    return pid_file.with_name(pid_file.name + ".lock")


def acquire_daemon_lock(pid_file: Path) -> Tuple[bool, Optional[int]]:
    """Atomically take the daemon lock and record our PID.

    Returns:
        (acquired, existing_pid). existing_pid is the running holder's PID
        when the lock is taken, else None.
    """
    pid_file = Path(pid_file)
    pid_file.parent.mkdir(parents=True, exist_ok=True)

    if pid_file in _held_locks:
        return False, os.getpid()

    fd = os.open(_lock_path(pid_file), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        return False, get_process_pid(pid_file)

    # Anything in the PID file now is stale: its owner no longer holds the lock
    write_pid_file(pid_file)
    _held_locks[pid_file] = fd
    return True, None


def release_daemon_lock(pid_file: Path) -> None:
    """Release a lock taken with acquire_daemon_lock. Safe to call twice."""
    fd = _held_locks.pop(Path(pid_file), None)
    if fd is None:
        return
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def stop_process(pid_file: Path, timeout: float = 5.0) -> bool:
    """Stop the process named in a PID file: SIGTERM, then SIGKILL.

    Returns:
        True if a live process was signalled, False otherwise. Invalid or
        stale PID files are removed.
    """
    pid_file = Path(pid_file)
    if not pid_file.exists():
        return False

    pid = _read_pid(pid_file)
    if pid is None:
        remove_pid_file(pid_file)
        return False

    try:
        os.kill(pid, signal.SIGTERM)
    except OSError:
        remove_pid_file(pid_file)
        return False

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except OSError:
            return True
        time.sleep(0.1)

    try:
        os.kill(pid, signal.SIGKILL)
    except OSError:
        pass
    remove_pid_file(pid_file)
    return True
