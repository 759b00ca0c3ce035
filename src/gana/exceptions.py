"""
Exception hierarchy for gana.

Every error raised by the orchestration layer derives from GanaError so that
callers (CLI, supervisor UI) can catch one base class and show a message.
"""


class GanaError(Exception):
    """Base class for all gana errors."""


class SpawnError(GanaError):
    """The assistant binary is missing or tmux could not allocate a session."""


class VcsError(GanaError):
    """A git branch or worktree operation failed."""


class PathCollisionError(VcsError):
    """No unique worktree path or branch name could be derived."""


class SessionNotFoundError(GanaError):
    """The named tmux session does not exist."""

    def __init__(self, name: str):
        super().__init__(f"tmux session '{name}' not found")
        self.name = name


class AlreadyRunningError(GanaError):
    """Another daemon already holds the lock."""

    def __init__(self, pid: int = None):
        if pid:
            message = f"daemon already running (PID {pid})"
        else:
            message = "could not acquire daemon lock (another daemon may be starting)"
        super().__init__(message)
        self.pid = pid


class PersistenceError(GanaError):
    """A persisted record could not be read or written."""


class InvalidStateError(GanaError):
    """The operation is not valid for the instance's current status."""


class InstanceNotFoundError(GanaError):
    """No instance matches the given id, id prefix or title."""


class ConfigError(GanaError):
    """The config file could not be read."""


class TmuxNotFoundError(SpawnError):
    """tmux is not installed."""


class GitNotFoundError(VcsError):
    """git is not installed."""
