"""
Protocol definitions for external dependencies.

These interfaces allow dependency injection for testing: the real tmux
backend (libtmux) can be swapped for an in-memory one in unit tests.
"""

from typing import List, Optional, Protocol, runtime_checkable


@runtime_checkable
class TmuxInterface(Protocol):
    """Interface for tmux operations, addressed by session name.

    Methods report failure through their return value rather than raising;
    TerminalSessionManager turns failures into gana exceptions.
    """

    def has_session(self, session: str) -> bool:
        """Check if a tmux session exists."""
        ...

    def new_session(self, session: str, cwd: str, command: str,
                    width: int, height: int) -> bool:
        """Create a detached session running ``command`` in ``cwd``.

        Returns:
            True if the session was created, False otherwise
        """
        ...

    def kill_session(self, session: str) -> bool:
        """Kill a session. Returns False if it was not there."""
        ...

    def capture_pane(self, session: str) -> Optional[str]:
        """Capture the visible pane contents, escape sequences included.

        Returns:
            Pane content, or None if the session is gone
        """
        ...

    def send_keys(self, session: str, keys: str, enter: bool = False,
                  literal: bool = False) -> bool:
        """Send keys to the session's active pane.

        Args:
            session: tmux session name
            keys: key names (``Enter``, ``C-c``) or text
            enter: press Enter afterwards
            literal: send ``keys`` as literal text rather than key names

        Returns:
            True if successful, False otherwise
        """
        ...

    def resize(self, session: str, width: int, height: int) -> bool:
        """Resize the session's window."""
        ...

    def pane_pid(self, session: str) -> Optional[int]:
        """PID of the process running in the session's active pane."""
        ...

    def list_sessions(self) -> List[str]:
        """Names of all sessions on the server."""
        ...

    def attach_command(self, session: str) -> List[str]:
        """argv of a tmux client that attaches to ``session``."""
        ...
