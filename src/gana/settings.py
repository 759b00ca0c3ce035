"""
Centralized settings and path resolution.

All state lives under one directory: ``$GANA_STATE_DIR`` if set, otherwise
``~/.gana``. The directory is resolved once into a frozen ``Paths`` value
which is passed to every component that needs a location.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


STATE_DIR_ENV = "GANA_STATE_DIR"
TMUX_SOCKET_ENV = "GANA_TMUX_SOCKET"


def get_state_dir() -> Path:
    """Get the state directory, honouring the GANA_STATE_DIR override."""
    override = os.environ.get(STATE_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".gana"


@dataclass(frozen=True)
class Paths:
    """Every file and directory gana reads or writes."""

    state_dir: Path

    @property
    def config_file(self) -> Path:
        return self.state_dir / "config.yaml"

    @property
    def instances_file(self) -> Path:
        return self.state_dir / "instances.json"

    @property
    def instances_lock(self) -> Path:
        return self.state_dir / "instances.lock"

    @property
    def worktrees_dir(self) -> Path:
        return self.state_dir / "worktrees"

    @property
    def daemon_pid(self) -> Path:
        return self.state_dir / "daemon.pid"

    @property
    def daemon_state(self) -> Path:
        return self.state_dir / "daemon_state.json"

    @property
    def daemon_log(self) -> Path:
        return self.state_dir / "daemon.log"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    def ensure(self) -> "Paths":
        """Create the state and worktree directories if missing."""
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        return self


def get_paths(state_dir: Optional[Path] = None) -> Paths:
    """Resolve paths, either for an explicit directory or from the environment."""
    return Paths(Path(state_dir) if state_dir else get_state_dir())


@dataclass(frozen=True)
class SchedulerSettings:
    """Background refresh tuning."""

    interval: float = 0.5        # seconds between interactive ticks
    max_workers: int = 8         # refresh pool size
    refresh_timeout: float = 5.0 # a refresh running longer is abandoned


@dataclass(frozen=True)
class DaemonSettings:
    """Daemon loop tuning."""

    stop_timeout: float = 5.0    # SIGTERM grace before SIGKILL


@dataclass(frozen=True)
class TmuxSettings:
    """Terminal session defaults."""

    default_width: int = 200
    default_height: int = 50
    kill_grace: float = 2.0      # SIGTERM grace for the pane process group


SCHEDULER = SchedulerSettings()
DAEMON = DaemonSettings()
TMUX = TmuxSettings()
