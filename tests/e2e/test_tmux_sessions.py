"""
E2E: terminal sessions against a real tmux server.

Runs on an isolated socket so the user's tmux is never touched.
"""

import os
import subprocess
import time

import pytest

from gana.implementations import RealTmux
from gana.tmux_manager import TerminalSessionManager

pytestmark = pytest.mark.requires_tmux


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return predicate()


@pytest.fixture
def tmux_socket():
    socket = f"gana-e2e-{os.getpid()}"
    yield socket
    subprocess.run(["tmux", "-L", socket, "kill-server"], capture_output=True, check=False)


@pytest.fixture
def sessions(tmux_socket):
    return TerminalSessionManager(tmux=RealTmux(socket_name=tmux_socket), check_program=False)


class TestRealTmuxSessions:
    """Create, inspect and kill sessions on a real tmux server."""

    def test_session_lifecycle(self, sessions, tmp_path):
        session = sessions.create("gana_e2e_lifecycle", tmp_path, ["sh", "-c", "echo gana-ready; sleep 30"])

        assert sessions.exists("gana_e2e_lifecycle")
        assert isinstance(session.pid, int)
        assert wait_for(lambda: "gana-ready" in sessions.capture("gana_e2e_lifecycle"))
        assert "gana_e2e_lifecycle" in sessions.list_sessions()

        sessions.kill("gana_e2e_lifecycle")

        assert wait_for(lambda: not sessions.exists("gana_e2e_lifecycle"))

    def test_kill_is_idempotent(self, sessions, tmp_path):
        sessions.create("gana_e2e_twice", tmp_path, ["sleep", "30"])

        sessions.kill("gana_e2e_twice")
        sessions.kill("gana_e2e_twice")

        assert not sessions.exists("gana_e2e_twice")

    def test_reattach_keeps_pid(self, sessions, tmp_path):
        created = sessions.create("gana_e2e_reattach", tmp_path, ["sleep", "30"])

        again = sessions.reattach("gana_e2e_reattach")

        assert again.pid == created.pid
        sessions.kill("gana_e2e_reattach")
