"""
Orchestrator: the interface the interactive supervisor drives.

Wraps the registry, the scheduler and instance creation behind
id-addressed operations. Slow work (worktree creation, launching and
waiting for the trust prompt) happens on a background executor; the caller
learns about it by polling ``poll_updates``.
"""

import queue
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .attach import AttachHandle
from .config import Config
from .exceptions import GanaError, InstanceNotFoundError
from .instance import Instance, RestartOptions, new_instance_id, utcnow
from .logging_config import get_logger
from .programs import parse_program
from .registry import LoadReport, Registry
from .scheduler import BackgroundScheduler
from .trust_prompts import TrustPromptResponder, wait_for_trust_prompt

logger = get_logger("orchestrator")

UPDATE_CREATED = "created"
UPDATE_FAILED = "failed"
UPDATE_STATUS = "status"
UPDATE_REFRESHED = "refreshed"


@dataclass(frozen=True)
class Update:
    """Something the supervisor may want to redraw."""

    kind: str
    instance_id: Optional[str] = None
    title: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ResetReport:
    instances: int = 0
    sessions: int = 0
    worktrees: int = 0


class Orchestrator:
    """Id-addressed lifecycle operations plus background refresh.

    Args:
        registry: the shared registry (owns the tmux and git managers)
        config: validated configuration
        create_workers: concurrent instance creations allowed
        trust_timeout: override the per-program trust prompt wait
    """

    def __init__(
        self,
        registry: Registry,
        config: Config,
        create_workers: int = 4,
        trust_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.config = config
        self.sessions = registry.sessions
        self.workspaces = registry.workspaces
        self.trust_timeout = trust_timeout
        self.scheduler = BackgroundScheduler(
            self.sessions,
            self.workspaces,
            responder=TrustPromptResponder(self.sessions.send_keys),
            auto_yes=config.auto_yes,
        )
        self._creator = ThreadPoolExecutor(max_workers=create_workers, thread_name_prefix="gana-create")
        self._updates: "queue.SimpleQueue[Update]" = queue.SimpleQueue()

    def load(self) -> LoadReport:
        return self.registry.load()

    # -- queries -------------------------------------------------------------

    def instances(self) -> List[Instance]:
        return self.registry.list()

    def get(self, instance_id: str) -> Instance:
        instance = self.registry.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"no instance with id {instance_id}")
        return instance

    def resolve(self, ref: str) -> Instance:
        """Find an instance by exact id, unique id prefix, or unique title."""
        instance = self.registry.get(ref)
        if instance is not None:
            return instance
        candidates = [i for i in self.registry.list() if i.id.startswith(ref)]
        if not candidates:
            candidates = [i for i in self.registry.list() if i.title == ref]
        if len(candidates) == 1:
            return candidates[0]
        if not candidates:
            raise InstanceNotFoundError(f"no instance matches '{ref}'")
        raise InstanceNotFoundError(f"'{ref}' is ambiguous ({len(candidates)} matches)")

    # -- creation ------------------------------------------------------------

    def create_instance(
        self,
        title: str,
        prompt: Optional[str] = None,
        program: Optional[str] = None,
        repo_root: Optional[Path] = None,
    ) -> "Future[Instance]":
        """Create, launch and register an instance in the background.

        The returned future resolves to the running Instance, or raises
        the SpawnError/VcsError that stopped it. A "created" or "failed"
        update is queued either way.
        """
        title = title.strip()
        if not title:
            raise ValueError("title must not be empty")
        chosen = parse_program(program or self.config.default_program)
        repo = Path(repo_root) if repo_root else Path.cwd()

        return self._creator.submit(self._create, title, prompt, chosen, repo)

    def _create(self, title: str, prompt: Optional[str], program, repo_root: Path) -> Instance:
        try:
            instance = self._launch(title, prompt, program, repo_root)
        except Exception as e:
            self._updates.put(Update(UPDATE_FAILED, title=title, error=str(e)))
            raise
        self._updates.put(Update(UPDATE_CREATED, instance.id, instance.title))
        return instance

    def _launch(self, title: str, prompt: Optional[str], program, repo_root: Path) -> Instance:
        instance_id = new_instance_id()
        workspace = self.workspaces.create(repo_root, title, instance_id, utcnow())
        instance = Instance(
            id=instance_id,
            title=title,
            program=program,
            workspace=workspace,
            sessions=self.sessions,
            workspaces=self.workspaces,
            auto_yes=self.config.auto_yes,
        )
        try:
            instance.start()
            wait_for_trust_prompt(
                self.sessions.capture,
                self.sessions.send_keys,
                instance.handle_name,
                instance.program.value,
                timeout=self.trust_timeout,
            )
            if prompt:
                instance.send_prompt(prompt)
        except Exception:
            logger.exception(f"Creating '{title}' failed; rolling back")
            instance.kill()
            try:
                self.workspaces.remove(workspace, force=True)
            except GanaError as cleanup_error:
                logger.error(f"Could not remove {workspace.worktree_path}: {cleanup_error}")
            raise

        self.registry.insert(instance)
        logger.info(f"Created '{title}' ({instance.id[:8]}) on {workspace.branch_name}")
        return instance

    # -- lifecycle -----------------------------------------------------------

    def _after(self, instance: Instance) -> None:
        self.registry.update(instance.id)
        self._updates.put(Update(UPDATE_STATUS, instance.id, instance.title))

    def start(self, instance_id: str) -> Instance:
        instance = self.get(instance_id)
        instance.start(resume_conversation=True)
        self._after(instance)
        return instance

    def pause(self, instance_id: str) -> Instance:
        instance = self.get(instance_id)
        try:
            instance.pause()
        finally:
            self._after(instance)
        return instance

    def resume(self, instance_id: str) -> Instance:
        instance = self.get(instance_id)
        try:
            instance.resume()
        finally:
            self._after(instance)
        return instance

    def restart(self, instance_id: str, options: Optional[RestartOptions] = None) -> Instance:
        instance = self.get(instance_id)
        try:
            instance.restart(options)
        finally:
            self._after(instance)
        return instance

    def kill(self, instance_id: str) -> Instance:
        instance = self.get(instance_id)
        instance.kill()
        self._after(instance)
        return instance

    def delete(self, instance_id: str, force: bool = False) -> None:
        """Kill, erase the workspace, and forget the instance."""
        instance = self.get(instance_id)
        try:
            instance.delete(force=force)
        except GanaError:
            self._after(instance)
            raise
        self.registry.remove(instance.id)
        self._updates.put(Update(UPDATE_STATUS, instance.id, instance.title))

    def attach(self, instance_id: str) -> AttachHandle:
        instance = self.get(instance_id)
        try:
            return instance.attach()
        finally:
            self._after(instance)

    def diff_text(self, instance_id: str) -> str:
        return self.workspaces.diff_text(self.get(instance_id).workspace)

    def push(self, instance_id: str, message: Optional[str] = None) -> bool:
        """Commit the instance's pending changes and push its branch.

        Returns:
            True if pending changes were committed first
        """
        instance = self.get(instance_id)
        message = message or f"[gana] update from '{instance.title}'"
        with instance.lock:
            committed = self.workspaces.push_changes(instance.workspace, message)
        logger.info(f"Pushed '{instance.title}' ({instance.workspace.branch_name})")
        return committed

    # -- background refresh --------------------------------------------------

    def tick(self) -> List[str]:
        """Schedule a refresh round; returns the ids submitted."""
        self.registry.reload()
        return self.scheduler.tick(self.registry.list())

    def poll_updates(self) -> List[Update]:
        """Everything that changed since the last poll. Never blocks."""
        updates: List[Update] = []
        results = self.scheduler.drain()
        if results:
            changed = set(self.scheduler.apply(self.registry, results))
            for result in results:
                kind = UPDATE_STATUS if result.instance_id in changed else UPDATE_REFRESHED
                updates.append(Update(kind, result.instance_id))
        while True:
            try:
                updates.append(self._updates.get_nowait())
            except queue.Empty:
                return updates

    # -- teardown ------------------------------------------------------------

    def reset(self) -> ResetReport:
        """Kill every session, delete every worktree and empty the registry."""
        report = ResetReport()
        for instance in self.registry.list():
            instance.delete(force=True)
            report.instances += 1
        self.registry.clear()
        report.sessions = self.sessions.cleanup_sessions()
        report.worktrees = self.workspaces.cleanup_worktrees()
        logger.info(
            f"Reset: {report.instances} instances, {report.sessions} stray sessions, "
            f"{report.worktrees} stray worktrees"
        )
        return report

    def shutdown(self, wait: bool = True) -> None:
        self._creator.shutdown(wait=wait, cancel_futures=not wait)
        self.scheduler.shutdown(wait=wait)
