"""
Daemon state, published to ``daemon_state.json`` for ``gana debug`` and
``gana daemon status``.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional


@dataclass
class DaemonState:
    """Snapshot of what the daemon is doing."""

    pid: Optional[int] = None
    status: str = "starting"  # starting, active, stopped
    loop_count: int = 0
    started_at: Optional[datetime] = None
    last_loop_time: Optional[datetime] = None
    instance_count: int = 0
    live_count: int = 0
    prompts_answered: int = 0
    poll_interval_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "status": self.status,
            "loop_count": self.loop_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_loop_time": self.last_loop_time.isoformat() if self.last_loop_time else None,
            "instance_count": self.instance_count,
            "live_count": self.live_count,
            "prompts_answered": self.prompts_answered,
            "poll_interval_ms": self.poll_interval_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DaemonState":
        state = cls()
        state.pid = data.get("pid")
        state.status = data.get("status", "unknown")
        state.loop_count = data.get("loop_count", 0)
        state.instance_count = data.get("instance_count", 0)
        state.live_count = data.get("live_count", 0)
        state.prompts_answered = data.get("prompts_answered", 0)
        state.poll_interval_ms = data.get("poll_interval_ms", 0)
        if data.get("started_at"):
            state.started_at = datetime.fromisoformat(data["started_at"])
        if data.get("last_loop_time"):
            state.last_loop_time = datetime.fromisoformat(data["last_loop_time"])
        return state

    def save(self, path: Path) -> None:
        """Write the state atomically."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp = path.with_suffix(".tmp")
        with open(temp, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        temp.replace(path)

    @classmethod
    def load(cls, path: Path) -> Optional["DaemonState"]:
        """Read the state, or None if missing or unreadable."""
        path = Path(path)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return cls.from_dict(json.load(f))
        except (json.JSONDecodeError, OSError, KeyError, ValueError, AttributeError):
            return None
