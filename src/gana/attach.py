"""
Interactive attach to a tmux session.

An AttachHandle runs a tmux client inside a PTY it owns and pumps bytes
between that PTY and the caller's terminal. Detaching (Ctrl-Q) or closing
the handle kills the client; the tmux session and the assistant inside it
are never touched.
"""

import fcntl
import os
import pty
import selectors
import signal
import struct
import subprocess
import sys
import termios
import threading
import tty
from typing import List, Optional

from .logging_config import get_logger

logger = get_logger("attach")

DETACH_KEY = b"\x11"  # Ctrl-Q

REASON_DETACHED = "detached"
REASON_EXITED = "exited"
REASON_CLOSED = "closed"


def _get_winsize(fd: int) -> Optional[tuple]:
    try:
        packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8)
        rows, cols, _, _ = struct.unpack("HHHH", packed)
        return rows, cols
    except OSError:
        return None


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    try:
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
    except OSError:
        pass


class AttachHandle:
    """Revocable interactive control over one tmux session.

    Args:
        session_name: tmux session this handle controls
        command: argv of the tmux client to run
    """

    def __init__(self, session_name: str, command: List[str]):
        self.session_name = session_name
        self.command = list(command)
        self._process: Optional[subprocess.Popen] = None
        self._master_fd: Optional[int] = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._process is not None and not self._closed

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def open(self, rows: Optional[int] = None, cols: Optional[int] = None) -> None:
        """Spawn the tmux client in a fresh PTY."""
        with self._lock:
            if self._closed:
                raise RuntimeError("attach handle already closed")
            if self._process is not None:
                return

            master_fd, slave_fd = pty.openpty()
            if rows and cols:
                _set_winsize(slave_fd, rows, cols)

            def _preexec() -> None:
                os.setsid()
                fcntl.ioctl(0, termios.TIOCSCTTY, 0)

            try:
                self._process = subprocess.Popen(
                    self.command,
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    close_fds=True,
                    preexec_fn=_preexec,
                )
            except OSError:
                os.close(master_fd)
                raise
            finally:
                os.close(slave_fd)
            self._master_fd = master_fd
        logger.debug(f"Attach client {self._process.pid} started for {self.session_name}")

    def resize(self, rows: int, cols: int) -> None:
        """Propagate a terminal resize to the attach client."""
        if self._master_fd is not None and rows > 0 and cols > 0:
            _set_winsize(self._master_fd, rows, cols)

    def run(self, stdin_fd: Optional[int] = None, stdout_fd: Optional[int] = None) -> str:
        """Forward input and output until detach or client exit.

        Puts a TTY stdin into raw mode for the duration and restores it.

        Returns:
            Why control came back: "detached", "exited" or "closed"
        """
        stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
        is_tty = os.isatty(stdin_fd)

        size = _get_winsize(stdout_fd) if os.isatty(stdout_fd) else None
        self.open(*(size or (None, None)))

        saved_attrs = termios.tcgetattr(stdin_fd) if is_tty else None
        previous_winch = None
        if is_tty and threading.current_thread() is threading.main_thread():
            def _on_winch(signum, frame):
                new_size = _get_winsize(stdout_fd)
                if new_size:
                    self.resize(*new_size)
            previous_winch = signal.signal(signal.SIGWINCH, _on_winch)

        reason = REASON_CLOSED
        selector = selectors.DefaultSelector()
        try:
            if is_tty:
                tty.setraw(stdin_fd)
            selector.register(self._master_fd, selectors.EVENT_READ, "pty")
            selector.register(stdin_fd, selectors.EVENT_READ, "stdin")
            reason = self._pump(selector, stdin_fd, stdout_fd)
        finally:
            selector.close()
            if saved_attrs is not None:
                termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved_attrs)
            if previous_winch is not None:
                signal.signal(signal.SIGWINCH, previous_winch)
            self.close()
        return reason

    def _pump(self, selector: selectors.BaseSelector, stdin_fd: int, stdout_fd: int) -> str:
        process = self._process
        master_fd = self._master_fd
        while not self._closed:
            if process.poll() is not None:
                self._drain(master_fd, stdout_fd)
                return REASON_EXITED
            for key, _ in selector.select(timeout=0.1):
                if key.data == "pty":
                    try:
                        data = os.read(master_fd, 65536)
                    except OSError:
                        return REASON_EXITED
                    if not data:
                        return REASON_EXITED
                    os.write(stdout_fd, data)
                else:
                    data = os.read(stdin_fd, 1024)
                    if not data:
                        return REASON_DETACHED
                    if DETACH_KEY in data:
                        before = data.split(DETACH_KEY, 1)[0]
                        if before:
                            os.write(master_fd, before)
                        return REASON_DETACHED
                    os.write(master_fd, data)
        return REASON_CLOSED

    @staticmethod
    def _drain(master_fd: int, stdout_fd: int) -> None:
        """Forward whatever the client wrote before it exited."""
        with selectors.DefaultSelector() as selector:
            selector.register(master_fd, selectors.EVENT_READ)
            while selector.select(timeout=0.05):
                try:
                    data = os.read(master_fd, 65536)
                except OSError:
                    return
                if not data:
                    return
                os.write(stdout_fd, data)

    def close(self) -> None:
        """Kill the attach client and release the PTY. Safe to call twice."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            process, self._process = self._process, None
            master_fd, self._master_fd = self._master_fd, None

        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        if master_fd is not None:
            os.close(master_fd)
        logger.debug(f"Attach handle for {self.session_name} closed")

    def __enter__(self) -> "AttachHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
