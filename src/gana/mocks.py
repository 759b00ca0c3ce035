"""
In-memory implementations of protocol interfaces for testing.
"""

import itertools
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


# Above the kernel's pid_max, so a fake PID can never name a real process
_FAKE_PID_BASE = 5_000_000


@dataclass
class MockSession:
    name: str
    cwd: str
    command: str
    width: int
    height: int
    pid: int
    content: str = ""


class MockTmux:
    """In-memory tmux server implementing TmuxInterface."""

    def __init__(self):
        self.sessions: Dict[str, MockSession] = {}
        self.sent_keys: List[Tuple[str, str, bool]] = []
        self.resizes: List[Tuple[str, int, int]] = []
        self.fail_new_session = False
        self._pids = itertools.count(_FAKE_PID_BASE)
        self._lock = threading.Lock()

    def set_pane_content(self, session: str, content: str) -> None:
        self.sessions[session].content = content

    def has_session(self, session: str) -> bool:
        return session in self.sessions

    def new_session(self, session: str, cwd: str, command: str,
                    width: int, height: int) -> bool:
        with self._lock:
            if self.fail_new_session or session in self.sessions:
                return False
            self.sessions[session] = MockSession(
                name=session, cwd=cwd, command=command,
                width=width, height=height, pid=next(self._pids),
            )
            return True

    def kill_session(self, session: str) -> bool:
        with self._lock:
            return self.sessions.pop(session, None) is not None

    def capture_pane(self, session: str) -> Optional[str]:
        sess = self.sessions.get(session)
        return sess.content if sess else None

    def send_keys(self, session: str, keys: str, enter: bool = False,
                  literal: bool = False) -> bool:
        if session not in self.sessions:
            return False
        self.sent_keys.append((session, keys, enter))
        return True

    def resize(self, session: str, width: int, height: int) -> bool:
        sess = self.sessions.get(session)
        if sess is None:
            return False
        sess.width, sess.height = width, height
        self.resizes.append((session, width, height))
        return True

    def pane_pid(self, session: str) -> Optional[int]:
        sess = self.sessions.get(session)
        return sess.pid if sess else None

    def list_sessions(self) -> List[str]:
        return list(self.sessions)

    def attach_command(self, session: str) -> List[str]:
        return ["true"]
