"""
gana daemon: unattended monitoring.

Runs the same refresh loop as the interactive supervisor without a UI:
keeps previews and diff stats fresh, notices sessions that exited, and
answers trust prompts for auto-yes instances. At most one daemon runs per
state directory; the lock lives next to ``daemon.pid``.

The daemon never attaches, never launches assistants and never changes an
instance's program or workspace.
"""

import os
import signal
import subprocess
import sys
import threading
from datetime import datetime
from typing import Optional

from .config import Config, get_config
from .daemon_logging import DaemonLogger
from .daemon_state import DaemonState
from .exceptions import AlreadyRunningError
from .instance import LIVE_STATUSES
from .logging_config import setup_daemon_logging
from .pid_utils import (
    acquire_daemon_lock,
    get_process_pid,
    is_process_running,
    release_daemon_lock,
    remove_pid_file,
    stop_process,
)
from .registry import Registry, open_registry
from .scheduler import BackgroundScheduler
from .settings import DAEMON, Paths, STATE_DIR_ENV, get_paths
from .trust_prompts import TrustPromptResponder


class GanaDaemon:
    """The monitoring loop.

    Args:
        paths: state locations
        config: validated configuration (poll interval, auto_yes)
        registry: injected registry, mainly for tests
    """

    def __init__(self, paths: Paths, config: Config, registry: Optional[Registry] = None):
        self.paths = paths
        self.config = config
        self.registry = registry if registry is not None else open_registry(paths, config)
        self.scheduler = BackgroundScheduler(
            self.registry.sessions,
            self.registry.workspaces,
            responder=TrustPromptResponder(self.registry.sessions.send_keys),
            auto_yes=config.auto_yes,
        )
        self.log = DaemonLogger(paths.daemon_log)
        self.state = DaemonState(poll_interval_ms=config.daemon_poll_interval)
        self._shutdown = threading.Event()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def _interruptible_sleep(self, seconds: float) -> None:
        self._shutdown.wait(seconds)

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def handle_shutdown(signum, frame):
            self.log.info("Shutdown signal received")
            self.request_shutdown()

        signal.signal(signal.SIGTERM, handle_shutdown)
        signal.signal(signal.SIGINT, handle_shutdown)

    def run_once(self) -> None:
        """One loop iteration: reload, schedule, merge, publish."""
        self.state.loop_count += 1
        try:
            self.registry.reload()
            self.scheduler.tick(self.registry.list())
            self._merge_results()
        except Exception as e:
            self.log.error(f"Loop #{self.state.loop_count} failed: {e}")

        instances = self.registry.list()
        self.state.instance_count = len(instances)
        self.state.live_count = sum(1 for i in instances if i.status in LIVE_STATUSES)
        self.state.last_loop_time = datetime.now()
        self.state.save(self.paths.daemon_state)

    def _merge_results(self) -> None:
        results = self.scheduler.drain()
        if not results:
            return
        answered = sum(1 for r in results if r.prompt_answered)
        self.state.prompts_answered += answered
        for instance_id in self.scheduler.apply(self.registry, results):
            instance = self.registry.get(instance_id)
            if instance is not None:
                self.log.warn(f"'{instance.title}' exited; marked ready")
        if answered:
            self.log.success(f"Answered {answered} trust prompt(s)")

    def run(self, max_loops: Optional[int] = None) -> None:
        """Main daemon loop.

        Raises:
            AlreadyRunningError: another daemon holds the lock
        """
        pid_file = self.paths.daemon_pid
        acquired, existing_pid = acquire_daemon_lock(pid_file)
        if not acquired:
            raise AlreadyRunningError(existing_pid)

        try:
            self.log.section("gana daemon")
            self.log.info(f"PID: {os.getpid()}")
            self.log.info(f"State dir: {self.paths.state_dir}")
            self.log.info(
                f"Poll interval: {self.config.daemon_poll_interval}ms, "
                f"auto-yes: {'on' if self.config.auto_yes else 'off'}"
            )
            self._install_signal_handlers()

            report = self.registry.load()
            for error in report.errors:
                self.log.warn(error)
            self.log.info(f"Loaded {report.loaded} instances ({len(report.demoted)} exited while away)")

            self.state.pid = os.getpid()
            self.state.started_at = datetime.now()
            self.state.status = "active"
            self.state.save(self.paths.daemon_state)

            while not self.shutting_down:
                self.run_once()
                if max_loops is not None and self.state.loop_count >= max_loops:
                    break
                self._interruptible_sleep(self.config.poll_interval_seconds)
        finally:
            self.log.info("Daemon shutting down")
            self.scheduler.shutdown(wait=True)
            try:
                self._merge_results()
            except Exception as e:
                self.log.error(f"Final merge failed: {e}")
            self.state.status = "stopped"
            self.state.save(self.paths.daemon_state)
            remove_pid_file(pid_file)
            release_daemon_lock(pid_file)


def is_daemon_running(paths: Optional[Paths] = None) -> bool:
    paths = paths or get_paths()
    return is_process_running(paths.daemon_pid)


def get_daemon_pid(paths: Optional[Paths] = None) -> Optional[int]:
    paths = paths or get_paths()
    return get_process_pid(paths.daemon_pid)


def stop_daemon(paths: Optional[Paths] = None, timeout: float = DAEMON.stop_timeout) -> bool:
    """Ask a running daemon to finish its tick and exit.

    Returns:
        True if a daemon was signalled
    """
    paths = paths or get_paths()
    return stop_process(paths.daemon_pid, timeout=timeout)


def launch_daemon(paths: Optional[Paths] = None) -> int:
    """Start a detached daemon process.

    Returns:
        PID of the launched process
    """
    paths = paths or get_paths()
    paths.state_dir.mkdir(parents=True, exist_ok=True)
    env = dict(os.environ)
    env[STATE_DIR_ENV] = str(paths.state_dir)
    process = subprocess.Popen(
        [sys.executable, "-m", "gana", "daemon", "run"],
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
    )
    return process.pid


def main() -> int:
    """Run the daemon in the foreground of this process."""
    paths = get_paths()
    setup_daemon_logging(paths.log_dir / "gana.log")
    daemon = GanaDaemon(paths, get_config(paths.config_file))
    try:
        daemon.run()
    except AlreadyRunningError as e:
        daemon.log.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
