"""
Session registry and persistence.

The registry is the single shared mutable structure: every instance lives
here, and lifecycle changes are written to ``instances.json``:

    {
      "version": 1,
      "instances": [ {"id": ..., "title": ..., "status": ..., ...} ]
    }

Writes are atomic (temp file + fsync + rename) and serialized across
processes with an flock, so the interactive supervisor and the daemon can
share one file. Every save first merges what other processes wrote since we
last looked. Cache fields (preview, diff stats) are never persisted.
"""

import fcntl
import json
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set

from .exceptions import PersistenceError, SessionNotFoundError
from .instance import Instance, InstanceStatus, LIVE_STATUSES
from .logging_config import get_logger
from .tmux_manager import TerminalSessionManager
from .workspace import WorkspaceManager

logger = get_logger("registry")

SCHEMA_VERSION = 1


def open_registry(paths, config, tmux=None) -> "Registry":
    """Wire up a Registry with real (or injected) tmux and git managers.

    Args:
        paths: resolved ``settings.Paths``
        config: validated ``config.Config``
        tmux: TmuxInterface override, mainly for tests
    """
    sessions = TerminalSessionManager(tmux=tmux)
    workspaces = WorkspaceManager(paths.worktrees_dir, branch_prefix=config.branch_prefix)
    return Registry(paths.instances_file, sessions, workspaces, lock_path=paths.instances_lock)


@dataclass
class LoadReport:
    """What happened while loading the snapshot."""

    loaded: int = 0
    demoted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class Registry:
    """Thread-safe mapping of instance id to Instance, backed by a JSON file.

    Args:
        path: the snapshot file
        sessions: terminal session manager handed to loaded instances
        workspaces: workspace manager handed to loaded instances
        lock_path: cross-process write lock (default: ``<path>.lock``)
    """

    def __init__(
        self,
        path: Path,
        sessions: TerminalSessionManager,
        workspaces: WorkspaceManager,
        lock_path: Optional[Path] = None,
    ):
        self.path = Path(path)
        self.lock_path = Path(lock_path) if lock_path else self.path.with_suffix(".lock")
        self.sessions = sessions
        self.workspaces = workspaces
        self._instances: Dict[str, Instance] = {}
        self._lock = threading.RLock()
        self._last_seen_mtime: Optional[int] = None
        # Records as they were on disk when we last read or wrote the file
        self._seen: Dict[str, dict] = {}
        # Ids removed here but not yet written out
        self._removed: Set[str] = set()

    # -- mapping -------------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._instances)

    def __contains__(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self._instances

    def get(self, instance_id: str) -> Optional[Instance]:
        with self._lock:
            return self._instances.get(instance_id)

    def list(self) -> List[Instance]:
        """All instances, oldest first."""
        with self._lock:
            return sorted(self._instances.values(), key=lambda i: i.created_at)

    def insert(self, instance: Instance, persist: bool = True) -> None:
        with self._lock:
            if instance.id in self._instances:
                raise ValueError(f"instance {instance.id} already registered")
            self._instances[instance.id] = instance
            self._removed.discard(instance.id)
        if persist:
            self.save()

    def remove(self, instance_id: str, persist: bool = True) -> Optional[Instance]:
        with self._lock:
            instance = self._instances.pop(instance_id, None)
            if instance is not None:
                self._removed.add(instance_id)
        if instance is not None and persist:
            self.save()
        return instance

    def update(self, instance_id: str) -> None:
        """Record a lifecycle change made on a registered instance."""
        if instance_id not in self:
            raise KeyError(instance_id)
        self.save()

    def clear(self, persist: bool = True) -> None:
        with self._lock:
            self._removed.update(self._instances)
            self._instances.clear()
        if persist:
            self.save()

    # -- persistence ---------------------------------------------------------

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def snapshot(self) -> dict:
        with self._lock:
            records = [instance.to_dict() for instance in self.list()]
        return {"version": SCHEMA_VERSION, "instances": records}

    def save(self) -> None:
        """Merge other processes' changes, then atomically write every
        instance's durable fields.

        Raises:
            PersistenceError: the file could not be written
        """
        temp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._file_lock():
                self._merge_from_disk()
                payload = self.snapshot()
                with open(temp, "w") as f:
                    json.dump(payload, f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                temp.replace(self.path)
                self._last_seen_mtime = self.path.stat().st_mtime_ns
                with self._lock:
                    self._seen = {record["id"]: record for record in payload["instances"]}
                    self._removed.clear()
        except OSError as e:
            raise PersistenceError(f"could not write {self.path}: {e}") from e
        logger.debug(f"Saved {len(payload['instances'])} instances to {self.path}")

    def _merge_from_disk(self) -> None:
        """Fold in what other processes wrote. Caller holds the file lock.

        Instances this process never saw are added; ones deleted elsewhere
        are dropped unless they were created here. When both sides changed
        an instance, ours wins unless ours is ``ready``, which is only ever
        an observation and yields to an explicit transition made elsewhere.
        """
        report = LoadReport()
        records = self._read_records_locked(report)
        if records is None:
            return
        on_disk = self._parse(records, report)

        with self._lock:
            for instance_id, incoming in on_disk.items():
                if instance_id in self._removed:
                    continue
                current = self._instances.get(instance_id)
                if current is None:
                    self._reconcile(incoming, report)
                    self._instances[instance_id] = incoming
                    logger.debug(f"Merged '{incoming.title}' written by another process")
                    continue
                seen = self._seen.get(instance_id)
                if incoming.to_dict() == seen:
                    continue
                if current.to_dict() == seen or current.status is InstanceStatus.READY:
                    self._adopt(current, incoming)

            for instance_id in list(self._instances):
                if instance_id in self._seen and instance_id not in on_disk:
                    del self._instances[instance_id]
                    logger.debug(f"Dropped {instance_id[:8]}; deleted by another process")

    def _quarantine(self, reason: str, report: LoadReport) -> None:
        """Move an unreadable snapshot aside so the next save can't destroy it."""
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            self.path.replace(target)
        except OSError as e:
            report.errors.append(f"{self.path}: {reason}")
            logger.error(f"Could not read {self.path} ({reason}) or move it aside: {e}")
            return
        self._last_seen_mtime = None
        report.errors.append(f"{self.path}: {reason}; kept as {target.name}")
        logger.error(f"Could not read {self.path} ({reason}); moved it to {target}")

    def _read_records_locked(self, report: LoadReport) -> Optional[List[dict]]:
        try:
            with open(self.path) as f:
                data = json.load(f)
            self._last_seen_mtime = self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            self._quarantine(str(e), report)
            return None
        except OSError as e:
            report.errors.append(f"{self.path}: {e}")
            logger.error(f"Could not read {self.path}: {e}")
            return None

        if not isinstance(data, dict) or not isinstance(data.get("instances"), list):
            self._quarantine("unexpected top-level structure", report)
            return None
        version = data.get("version", SCHEMA_VERSION)
        if version != SCHEMA_VERSION:
            logger.warning(f"{self.path} has schema version {version}; reading what we can")
        return data["instances"]

    def _read_records(self, report: LoadReport) -> Optional[List[dict]]:
        with self._file_lock():
            return self._read_records_locked(report)

    def _reconcile(self, instance: Instance, report: LoadReport) -> None:
        """Check a loaded instance against what is really running."""
        if instance.status in LIVE_STATUSES:
            try:
                instance.terminal_session = self.sessions.reattach(instance.handle_name)
            except SessionNotFoundError:
                instance.terminal_session = None
                instance.status = InstanceStatus.READY
                report.demoted.append(instance.id)
                logger.info(f"'{instance.title}' exited while gana was not running")
                return

        if instance.status is not InstanceStatus.DEAD and not self.workspaces.exists(instance.workspace):
            logger.warning(
                f"Workspace for '{instance.title}' is missing: {instance.workspace.worktree_path}"
            )
            if instance.status is not InstanceStatus.READY:
                instance.status = InstanceStatus.READY
                report.demoted.append(instance.id)

    def _adopt(self, current: Instance, incoming: Instance) -> None:
        """Take another process's durable fields into a known instance."""
        with current.lock:
            if current.status is not incoming.status:
                current.status = incoming.status
                current.terminal_session = None
                if incoming.status in LIVE_STATUSES:
                    try:
                        current.terminal_session = self.sessions.reattach(current.handle_name)
                    except SessionNotFoundError:
                        current.status = InstanceStatus.READY
                current.generation += 1
            current.title = incoming.title
            current.auto_yes = incoming.auto_yes
            current.skip_permissions = incoming.skip_permissions
            current.last_active_at = incoming.last_active_at
            current.workspace = incoming.workspace

    def _parse(self, records: List[dict], report: LoadReport) -> Dict[str, Instance]:
        instances: Dict[str, Instance] = {}
        for index, record in enumerate(records):
            try:
                instance = Instance.from_dict(record, self.sessions, self.workspaces)
            except PersistenceError as e:
                report.errors.append(f"entry {index}: {e}")
                logger.warning(f"Skipping entry {index} in {self.path}: {e}")
                continue
            if instance.id in instances:
                report.errors.append(f"entry {index}: duplicate id {instance.id}")
                continue
            instances[instance.id] = instance
        return instances

    def load(self) -> LoadReport:
        """Replace the in-memory registry with the persisted snapshot.

        Bad entries are skipped and reported; an unreadable file is moved
        aside as ``instances.json.corrupt-<timestamp>``. Sessions that
        vanished while nobody was watching are demoted to ready.
        """
        report = LoadReport()
        records = self._read_records(report)
        instances = self._parse(records or [], report)
        seen = {instance_id: instance.to_dict() for instance_id, instance in instances.items()}
        for instance in instances.values():
            self._reconcile(instance, report)

        with self._lock:
            self._instances = instances
            self._seen = seen
            self._removed.clear()
        report.loaded = len(instances)

        if report.demoted:
            self.save()
        logger.info(
            f"Loaded {report.loaded} instances ({len(report.demoted)} demoted, "
            f"{len(report.errors)} errors)"
        )
        return report

    def reload(self) -> bool:
        """Pick up changes another process wrote since we last looked.

        Known instances get their durable fields refreshed in place; new
        ones are added; ones deleted elsewhere are dropped.

        Returns:
            True if the file had changed
        """
        try:
            mtime = self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return False
        if mtime == self._last_seen_mtime:
            return False

        report = LoadReport()
        records = self._read_records(report)
        if records is None:
            return False
        fresh = self._parse(records, report)
        seen = {instance_id: instance.to_dict() for instance_id, instance in fresh.items()}

        with self._lock:
            merged: Dict[str, Instance] = {}
            for instance_id, incoming in fresh.items():
                if instance_id in self._removed:
                    continue
                current = self._instances.get(instance_id)
                if current is None:
                    self._reconcile(incoming, report)
                    merged[instance_id] = incoming
                    continue
                self._adopt(current, incoming)
                merged[instance_id] = current
            for instance_id, instance in self._instances.items():
                if instance_id not in merged and instance_id not in self._seen:
                    merged[instance_id] = instance
            self._instances = merged
            self._seen = seen

        logger.debug(f"Reloaded {len(fresh)} instances from {self.path}")
        return True
