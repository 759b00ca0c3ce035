"""
Real implementation of TmuxInterface using libtmux.
"""

import os
import time
from typing import List, Optional

import libtmux
from libtmux.exc import LibTmuxException
from libtmux._internal.query_list import ObjectDoesNotExist

from .settings import TMUX_SOCKET_ENV


class RealTmux:
    """Production implementation of TmuxInterface."""

    def __init__(self, socket_name: Optional[str] = None):
        """Initialize with optional socket name for test isolation.

        If no socket_name is provided, checks the GANA_TMUX_SOCKET env var.
        """
        self.socket_name = socket_name or os.environ.get(TMUX_SOCKET_ENV)
        self._server: Optional[libtmux.Server] = None

    @property
    def server(self) -> libtmux.Server:
        """Lazy-load the tmux server connection."""
        if self._server is None:
            if self.socket_name:
                self._server = libtmux.Server(socket_name=self.socket_name)
            else:
                self._server = libtmux.Server()
        return self._server

    def _get_session(self, session: str) -> Optional[libtmux.Session]:
        try:
            return self.server.sessions.get(session_name=session)
        except (LibTmuxException, ObjectDoesNotExist):
            return None

    def _get_pane(self, session: str) -> Optional[libtmux.Pane]:
        sess = self._get_session(session)
        if sess is None:
            return None
        try:
            return sess.active_pane
        except LibTmuxException:
            return None

    def has_session(self, session: str) -> bool:
        try:
            return self.server.has_session(session)
        except LibTmuxException:
            return False

    def new_session(self, session: str, cwd: str, command: str,
                    width: int, height: int) -> bool:
        try:
            self.server.new_session(
                session_name=session,
                attach=False,
                start_directory=cwd,
                window_command=command,
                x=width,
                y=height,
            )
            return True
        except LibTmuxException:
            return False

    def kill_session(self, session: str) -> bool:
        sess = self._get_session(session)
        if sess is None:
            return False
        try:
            sess.kill()
            return True
        except LibTmuxException:
            return False

    def capture_pane(self, session: str) -> Optional[str]:
        pane = self._get_pane(session)
        if pane is None:
            return None
        try:
            captured = pane.capture_pane(escape_sequences=True)
        except LibTmuxException:
            return None
        if isinstance(captured, list):
            return "\n".join(captured)
        return captured

    def send_keys(self, session: str, keys: str, enter: bool = False,
                  literal: bool = False) -> bool:
        pane = self._get_pane(session)
        if pane is None:
            return False
        try:
            # Text and Enter go as separate commands; assistants that read
            # input in raw mode drop an Enter that arrives in the same write.
            if keys:
                pane.send_keys(keys, enter=False, literal=literal)
                if enter:
                    time.sleep(0.1)
            if enter:
                pane.send_keys("", enter=True)
            return True
        except LibTmuxException:
            return False

    def resize(self, session: str, width: int, height: int) -> bool:
        try:
            result = self.server.cmd(
                "resize-window", "-t", session, "-x", str(width), "-y", str(height)
            )
        except LibTmuxException:
            return False
        return not result.stderr

    def pane_pid(self, session: str) -> Optional[int]:
        pane = self._get_pane(session)
        if pane is None or pane.pane_pid is None:
            return None
        try:
            return int(pane.pane_pid)
        except (TypeError, ValueError):
            return None

    def list_sessions(self) -> List[str]:
        try:
            return [s.session_name for s in self.server.sessions]
        except LibTmuxException:
            return []

    def attach_command(self, session: str) -> List[str]:
        command = ["tmux"]
        if self.socket_name:
            command.extend(["-L", self.socket_name])
        command.extend(["attach-session", "-t", session])
        return command
