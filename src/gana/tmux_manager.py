"""
Terminal session management: one tmux session per instance.

tmux owns the PTY and the assistant process, so a session survives gana
exiting and can be picked up again by name. Absence of the named session is
the authoritative signal that an assistant has exited.
"""

import os
import re
import shlex
import shutil
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .attach import AttachHandle
from .dependency_check import require_program, require_tmux
from .exceptions import SessionNotFoundError, SpawnError
from .implementations import RealTmux
from .logging_config import get_logger
from .protocols import TmuxInterface
from .settings import TMUX
from .trust_prompts import strip_ansi

logger = get_logger("tmux_manager")

HANDLE_PREFIX = "gana_"


def sanitize_name(title: str, instance_id: str) -> str:
    """Derive a tmux session name from a title and an instance id.

    tmux treats '.' and ':' as target separators, so everything except
    letters, digits and '-' becomes '_'. The id suffix keeps names unique
    when titles collide.
    """
    slug = re.sub(r"[^A-Za-z0-9-]", "_", title[:64])
    slug = re.sub(r"_+", "_", slug).strip("_")[:32].strip("_")
    short_id = instance_id[:8]
    if slug:
        return f"{HANDLE_PREFIX}{slug}_{short_id}"
    return f"{HANDLE_PREFIX}{short_id}"


def terminal_size() -> Tuple[int, int]:
    """Current terminal (columns, lines), or the configured default."""
    size = shutil.get_terminal_size(fallback=(TMUX.default_width, TMUX.default_height))
    return size.columns, size.lines


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False


def terminate_process_group(pid: int, grace: float = TMUX.kill_grace) -> None:
    """SIGTERM the process group led by ``pid``, SIGKILL after ``grace``."""
    try:
        pgid = os.getpgid(pid)
    except (ProcessLookupError, PermissionError):
        return
    if pgid == os.getpgrp():
        return

    try:
        os.killpg(pgid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return

    deadline = time.monotonic() + grace
    while time.monotonic() < deadline:
        if not _pid_alive(pid):
            return
        time.sleep(0.05)

    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


@dataclass
class TerminalSession:
    """Addressable handle to a live tmux session."""

    handle_name: str
    pid: Optional[int] = None


class TerminalSessionManager:
    """Creates, inspects and destroys tmux sessions by name.

    Args:
        tmux: tmux backend (defaults to libtmux on the default server)
        process_killer: called with the pane PID when a session is killed
        check_program: verify tmux and the assistant binary are on PATH
            before launch
    """

    def __init__(
        self,
        tmux: Optional[TmuxInterface] = None,
        process_killer: Callable[[int], None] = terminate_process_group,
        check_program: bool = True,
    ):
        self.tmux = tmux or RealTmux()
        self._kill_process_group = process_killer
        self._check_program = check_program

    def exists(self, name: str) -> bool:
        return self.tmux.has_session(name)

    def check_command(self, command: Sequence[str]) -> None:
        """Fail early when ``command`` could not be launched at all.

        Raises:
            TmuxNotFoundError: tmux is not installed
            SpawnError: empty command, or the program is not on PATH
        """
        if not command:
            raise SpawnError("empty command")
        if self._check_program:
            require_tmux()
            require_program(command[0])

    def create(self, name: str, workdir: Path, command: Sequence[str]) -> TerminalSession:
        """Start ``command`` in ``workdir`` inside a new detached session.

        Raises:
            TmuxNotFoundError: tmux is not installed
            SpawnError: binary missing, name taken, or tmux refused
        """
        self.check_command(command)
        if not Path(workdir).is_dir():
            raise SpawnError(f"working directory does not exist: {workdir}")
        if self.exists(name):
            raise SpawnError(f"tmux session '{name}' already exists")

        width, height = terminal_size()
        ok = self.tmux.new_session(name, str(workdir), shlex.join(command), width, height)
        if not ok or not self.exists(name):
            raise SpawnError(f"tmux could not start session '{name}' running {command[0]}")

        pid = self.tmux.pane_pid(name)
        logger.info(f"Started {command[0]} in tmux session {name} (pid {pid})")
        return TerminalSession(handle_name=name, pid=pid)

    def reattach(self, name: str) -> TerminalSession:
        """Pick up an existing session by name without touching its process."""
        if not self.exists(name):
            raise SessionNotFoundError(name)
        return TerminalSession(handle_name=name, pid=self.tmux.pane_pid(name))

    def attach(self, name: str) -> AttachHandle:
        """Hand out an interactive attach handle for a session.

        The session is resized to the current terminal first.

        Raises:
            SessionNotFoundError: the session does not exist
        """
        if not self.exists(name):
            raise SessionNotFoundError(name)
        width, height = terminal_size()
        self.tmux.resize(name, width, height)
        return AttachHandle(name, self.tmux.attach_command(name))

    def capture(self, name: str) -> str:
        """Visible pane text with escape sequences stripped.

        Raises:
            SessionNotFoundError: the session does not exist
        """
        content = self.tmux.capture_pane(name)
        if content is None:
            raise SessionNotFoundError(name)
        return strip_ansi(content)

    def send_keys(self, name: str, keys: str, enter: bool = False, literal: bool = False) -> None:
        if not self.tmux.send_keys(name, keys, enter=enter, literal=literal):
            raise SessionNotFoundError(name)

    def send_text(self, name: str, text: str) -> None:
        """Type ``text`` literally and press Enter."""
        self.send_keys(name, text, enter=True, literal=True)

    def resize(self, name: str, width: int, height: int) -> None:
        if not self.tmux.resize(name, width, height):
            raise SessionNotFoundError(name)

    def pane_pid(self, name: str) -> Optional[int]:
        return self.tmux.pane_pid(name)

    def kill(self, name: str) -> None:
        """Destroy a session and its process tree. No-op if already gone."""
        pid = self.tmux.pane_pid(name) if self.exists(name) else None
        # Group first: once the pane leader is gone its pgid can't be looked up
        if pid:
            self._kill_process_group(pid)
        self.tmux.kill_session(name)
        logger.debug(f"Killed tmux session {name}")

    def list_sessions(self) -> List[str]:
        """Names of gana-owned sessions."""
        return [s for s in self.tmux.list_sessions() if s.startswith(HANDLE_PREFIX)]

    def cleanup_sessions(self) -> int:
        """Kill every gana-owned session. Returns how many were killed."""
        names = self.list_sessions()
        for name in names:
            self.kill(name)
        return len(names)
