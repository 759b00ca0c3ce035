"""
Tests for AttachHandle.

Runs small real commands inside a PTY; the caller's terminal is replaced by
pipes.
"""

import os

import pytest

from gana.attach import REASON_DETACHED, REASON_EXITED, AttachHandle


@pytest.fixture
def pipes():
    """(stdin read end, stdin write end, stdout read end, stdout write end)"""
    in_r, in_w = os.pipe()
    out_r, out_w = os.pipe()
    yield in_r, in_w, out_r, out_w
    for fd in (in_r, in_w, out_r, out_w):
        try:
            os.close(fd)
        except OSError:
            pass


class TestAttachHandle:
    """Test the attach client lifecycle."""

    def test_new_handle_is_not_open(self):
        handle = AttachHandle("gana_x", ["true"])
        assert not handle.is_open
        assert handle.pid is None

    def test_close_is_idempotent(self):
        handle = AttachHandle("gana_x", ["true"])
        handle.close()
        handle.close()
        assert not handle.is_open

    def test_cannot_reopen_after_close(self):
        handle = AttachHandle("gana_x", ["true"])
        handle.close()
        with pytest.raises(RuntimeError):
            handle.open()

    def test_close_kills_the_client(self):
        handle = AttachHandle("gana_x", ["sleep", "30"])
        handle.open(24, 80)
        process = handle._process
        assert handle.is_open

        handle.close()

        assert process.poll() is not None
        assert not handle.is_open

    def test_context_manager_closes(self):
        with AttachHandle("gana_x", ["sleep", "30"]) as handle:
            handle.open()
            process = handle._process
        assert process.poll() is not None

    def test_detach_key_returns_control(self, pipes):
        """Ctrl-Q ends the session from the caller's side; input before it is forwarded."""
        in_r, in_w, out_r, out_w = pipes
        os.write(in_w, b"hello\x11")
        handle = AttachHandle("gana_x", ["cat"])

        reason = handle.run(stdin_fd=in_r, stdout_fd=out_w)

        assert reason == REASON_DETACHED
        assert not handle.is_open

    def test_client_exit_returns_control(self, pipes):
        in_r, in_w, out_r, out_w = pipes
        handle = AttachHandle("gana_x", ["true"])

        reason = handle.run(stdin_fd=in_r, stdout_fd=out_w)

        assert reason == REASON_EXITED

    def test_output_is_forwarded(self, pipes):
        in_r, in_w, out_r, out_w = pipes
        handle = AttachHandle("gana_x", ["echo", "from-the-pty"])

        handle.run(stdin_fd=in_r, stdout_fd=out_w)

        os.close(out_w)
        output = b""
        while True:
            chunk = os.read(out_r, 4096)
            if not chunk:
                break
            output += chunk
        assert b"from-the-pty" in output
