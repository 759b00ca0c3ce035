"""
Background refresh of instance previews, diff stats and liveness.

Each tick hands one unit of work per live instance to a thread pool. Workers
never touch Instance objects; they push a RefreshResult onto a queue that the
coordinating loop drains without blocking and merges with ``apply``. An
instance whose previous work is still running is skipped rather than queued
again, so a hung capture only ever stalls that one instance. Work running
longer than the refresh timeout is abandoned: it reports an error, its late
result is dropped, and the pool is replaced so queued work is not starved
behind it.
"""

import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .exceptions import SessionNotFoundError
from .instance import Instance, LIVE_STATUSES
from .logging_config import get_logger
from .settings import SCHEDULER
from .tmux_manager import TerminalSessionManager
from .trust_prompts import TrustPromptResponder
from .workspace import DiffStats, Workspace, WorkspaceManager

logger = get_logger("scheduler")


@dataclass(frozen=True)
class RefreshJob:
    """Everything a worker needs, copied off the instance at tick time."""

    instance_id: str
    handle_name: str
    program: str
    workspace: Workspace
    auto_respond: bool
    generation: int


@dataclass(frozen=True)
class RefreshResult:
    instance_id: str
    generation: int
    alive: bool
    preview: Optional[str] = None
    diff_stats: Optional[DiffStats] = None
    prompt_answered: bool = False
    error: Optional[str] = None


class BackgroundScheduler:
    """Keeps instance caches fresh off the caller's thread.

    Args:
        sessions: used for capture and liveness
        workspaces: used for diff stats
        responder: trust-prompt responder; None disables auto-response
        auto_yes: answer prompts for every instance, not only those
            created with auto_yes
        max_workers: pool size
        refresh_timeout: seconds before running work is abandoned
    """

    def __init__(
        self,
        sessions: TerminalSessionManager,
        workspaces: WorkspaceManager,
        responder: Optional[TrustPromptResponder] = None,
        auto_yes: bool = False,
        max_workers: int = SCHEDULER.max_workers,
        refresh_timeout: float = SCHEDULER.refresh_timeout,
    ):
        self.sessions = sessions
        self.workspaces = workspaces
        self.responder = responder
        self.auto_yes = auto_yes
        self.max_workers = max_workers
        self.refresh_timeout = refresh_timeout
        self._executor = self._new_executor()
        self._results: "queue.SimpleQueue[RefreshResult]" = queue.SimpleQueue()
        self._in_flight: Set[str] = set()
        self._futures: Dict[str, Future] = {}
        # Jobs a worker has picked up, with their start time
        self._running: Dict[str, Tuple[RefreshJob, float]] = {}
        self._abandoned: Set[str] = set()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def in_flight(self) -> Set[str]:
        with self._lock:
            return set(self._in_flight)

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gana-refresh")

    def tick(self, instances: Iterable[Instance]) -> List[str]:
        """Submit refresh work for every live instance not already busy.

        Never blocks on the work itself.

        Returns:
            Ids that were submitted this tick
        """
        self._expire_stuck()
        submitted = []
        for instance in instances:
            with instance.lock:
                if instance.status not in LIVE_STATUSES:
                    continue
                job = RefreshJob(
                    instance_id=instance.id,
                    handle_name=instance.handle_name,
                    program=instance.program.value,
                    workspace=instance.workspace,
                    auto_respond=self.responder is not None and (self.auto_yes or instance.auto_yes),
                    generation=instance.generation,
                )

            with self._lock:
                if self._closed or job.instance_id in self._in_flight:
                    continue
                self._futures[job.instance_id] = self._executor.submit(self._refresh, job)
                self._in_flight.add(job.instance_id)
            submitted.append(job.instance_id)
        return submitted

    def _expire_stuck(self) -> None:
        """Give up on work that has run past the refresh timeout.

        Each stuck job reports a timeout now. The pool it occupies is
        replaced and its queued work cancelled so the next submission
        starts promptly.
        """
        now = time.monotonic()
        with self._lock:
            if self._closed:
                return
            stuck = [job for job, started in self._running.values() if now - started > self.refresh_timeout]
            if not stuck:
                return
            for job in stuck:
                del self._running[job.instance_id]
                self._abandoned.add(job.instance_id)
                self._results.put(
                    RefreshResult(job.instance_id, job.generation, alive=True, error="refresh timed out")
                )
                logger.warning(f"Refresh of {job.handle_name} exceeded {self.refresh_timeout}s; abandoned")
            old, self._executor = self._executor, self._new_executor()

        old.shutdown(wait=False, cancel_futures=True)
        with self._lock:
            for instance_id, future in list(self._futures.items()):
                if future.cancelled():
                    del self._futures[instance_id]
                    self._in_flight.discard(instance_id)

    def _refresh(self, job: RefreshJob) -> None:
        with self._lock:
            self._running[job.instance_id] = (job, time.monotonic())
        result = RefreshResult(job.instance_id, job.generation, alive=True, error="refresh did not complete")
        try:
            result = self._do_refresh(job)
        except Exception as e:
            logger.warning(f"Refresh failed for {job.handle_name}: {e}")
            result = RefreshResult(job.instance_id, job.generation, alive=True, error=str(e))
        finally:
            with self._lock:
                self._in_flight.discard(job.instance_id)
                self._futures.pop(job.instance_id, None)
                self._running.pop(job.instance_id, None)
                abandoned = job.instance_id in self._abandoned
                self._abandoned.discard(job.instance_id)
            if abandoned:
                logger.debug(f"Dropping late refresh result for {job.handle_name}")
            else:
                self._results.put(result)

    def _do_refresh(self, job: RefreshJob) -> RefreshResult:
        if not self.sessions.exists(job.handle_name):
            if self.responder is not None:
                self.responder.forget(job.handle_name)
            return RefreshResult(job.instance_id, job.generation, alive=False)

        try:
            preview = self.sessions.capture(job.handle_name)
        except SessionNotFoundError:
            return RefreshResult(job.instance_id, job.generation, alive=False)

        answered = False
        if job.auto_respond:
            answered = self.responder.check(job.handle_name, job.program, preview)

        diff_stats = self.workspaces.diff_stats(job.workspace)
        return RefreshResult(
            job.instance_id,
            job.generation,
            alive=True,
            preview=preview,
            diff_stats=diff_stats,
            prompt_answered=answered,
        )

    def drain(self) -> List[RefreshResult]:
        """Everything finished since the last drain, without waiting."""
        results = []
        while True:
            try:
                results.append(self._results.get_nowait())
            except queue.Empty:
                return results

    def apply(self, registry, results: Iterable[RefreshResult]) -> List[str]:
        """Merge results into the registry's instances.

        Cache fields are updated in memory only. Instances whose session
        vanished are demoted to ready and the registry is saved.

        Returns:
            Ids whose lifecycle status changed
        """
        changed = []
        for result in results:
            instance = registry.get(result.instance_id)
            if instance is None:
                continue
            if result.error:
                logger.debug(f"Keeping stale cache for {instance.title}: {result.error}")
                continue
            with instance.lock:
                if instance.generation != result.generation:
                    continue
                instance.update_cache(result.preview, result.diff_stats)
                if not result.alive and instance.check_liveness(alive=False):
                    changed.append(instance.id)
        if changed:
            registry.save()
        return changed

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; with ``wait`` let in-flight work finish."""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
