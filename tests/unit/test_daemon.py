"""
Tests for the monitoring daemon.

The daemon runs in-process against MockTmux with a bounded number of
loops; signal handler installation is patched out so pytest keeps its own.
"""

import os
from unittest.mock import patch

import pytest

from gana.config import Config
from gana.daemon import GanaDaemon, get_daemon_pid, is_daemon_running, stop_daemon
from gana.daemon_state import DaemonState
from gana.exceptions import AlreadyRunningError
from gana.instance import InstanceStatus
from gana.pid_utils import acquire_daemon_lock, release_daemon_lock, write_pid_file


@pytest.fixture
def daemon(paths, registry):
    daemon = GanaDaemon(paths, Config(daemon_poll_interval=10), registry=registry)
    with patch.object(daemon, "_install_signal_handlers"):
        yield daemon
    release_daemon_lock(paths.daemon_pid)


class TestRun:
    """Test the daemon main loop."""

    def test_single_loop_publishes_state(self, daemon, paths):
        daemon.run(max_loops=1)

        state = DaemonState.load(paths.daemon_state)
        assert state.status == "stopped"
        assert state.loop_count == 1
        assert state.pid == os.getpid()
        assert state.poll_interval_ms == 10

    def test_cleans_up_pid_file_and_lock(self, daemon, paths):
        daemon.run(max_loops=1)

        assert not paths.daemon_pid.exists()
        acquired, _ = acquire_daemon_lock(paths.daemon_pid)
        assert acquired is True

    def test_loads_registry_and_demotes_exited_sessions(self, daemon, registry, make_instance, mock_tmux):
        """A session that vanished is marked ready by the time the daemon stops."""
        alive = make_instance("alive")
        gone = make_instance("gone")
        alive.start()
        gone.start()
        registry.insert(alive)
        registry.insert(gone)
        mock_tmux.kill_session(gone.handle_name)

        daemon.run(max_loops=2)

        assert registry.get(alive.id).status is InstanceStatus.RUNNING
        assert registry.get(gone.id).status is InstanceStatus.READY

    def test_answers_trust_prompts_for_auto_yes(self, paths, registry, make_instance, mock_tmux):
        instance = make_instance(auto_yes=True)
        instance.start()
        registry.insert(instance)
        mock_tmux.set_pane_content(instance.handle_name, "Do you trust the files in this folder?")

        daemon = GanaDaemon(paths, Config(daemon_poll_interval=10), registry=registry)
        with patch.object(daemon, "_install_signal_handlers"):
            daemon.run(max_loops=3)

        assert daemon.state.prompts_answered == 1
        assert mock_tmux.sent_keys.count((instance.handle_name, "Enter", False)) == 1

    def test_second_daemon_refused(self, daemon, paths):
        acquire_daemon_lock(paths.daemon_pid)

        with pytest.raises(AlreadyRunningError) as exc_info:
            daemon.run(max_loops=1)

        assert exc_info.value.pid == os.getpid()

    def test_shutdown_request_ends_loop(self, daemon, paths):
        daemon.request_shutdown()

        daemon.run()

        assert daemon.state.loop_count == 0
        assert DaemonState.load(paths.daemon_state).status == "stopped"

    def test_loop_errors_do_not_stop_daemon(self, daemon, registry):
        with patch.object(registry, "reload", side_effect=RuntimeError("disk on fire")):
            daemon.run(max_loops=2)

        assert daemon.state.loop_count == 2
        assert "disk on fire" in daemon.log.log_file.read_text()


class TestHelpers:
    """Test daemon discovery and control helpers."""

    def test_not_running(self, paths):
        assert is_daemon_running(paths) is False
        assert get_daemon_pid(paths) is None
        assert stop_daemon(paths) is False

    def test_running(self, paths):
        write_pid_file(paths.daemon_pid)
        assert is_daemon_running(paths) is True
        assert get_daemon_pid(paths) == os.getpid()
