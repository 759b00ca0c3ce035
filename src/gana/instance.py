"""
Instance: one managed assistant session and its lifecycle.

An Instance owns a Workspace (its git worktree) and, while running or
paused, a TerminalSession (its tmux session). Status moves through:

    ready ──start──▶ running ◀──resume── paused
      ▲                │  └────pause─────▶ │
      └──liveness──────┴───────────────────┘
    any ──kill──▶ dead        any ──restart──▶ running

``ready`` is only ever *detected* (the tmux session vanished), never
requested. ``dead`` is only reached through ``kill``.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .attach import AttachHandle
from .exceptions import InvalidStateError, PersistenceError, SessionNotFoundError, SpawnError
from .logging_config import get_structured_logger
from .programs import Program, build_command
from .tmux_manager import TerminalSession, TerminalSessionManager, sanitize_name
from .workspace import DiffStats, Workspace, WorkspaceManager

MAX_TITLE_LENGTH = 64


class InstanceStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    READY = "ready"
    DEAD = "dead"


LIVE_STATUSES = (InstanceStatus.RUNNING, InstanceStatus.PAUSED)


@dataclass(frozen=True)
class RestartOptions:
    """Command-line toggles for a fresh assistant process."""

    skip_permissions: bool = False
    resume_conversation: bool = True


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_instance_id() -> str:
    return uuid.uuid4().hex


def _parse_time(value) -> datetime:
    if not value:
        return utcnow()
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(eq=False)
class Instance:
    """One isolated assistant session.

    All lifecycle methods take the instance lock, so operations on one
    instance never interleave. Collaborators are injected; see
    ``from_dict`` for rebuilding an instance from disk.
    """

    title: str
    program: Program
    workspace: Workspace
    sessions: TerminalSessionManager = field(repr=False)
    workspaces: WorkspaceManager = field(repr=False)
    id: str = field(default_factory=new_instance_id)
    status: InstanceStatus = InstanceStatus.READY
    handle_name: str = ""
    created_at: datetime = field(default_factory=utcnow)
    last_active_at: datetime = field(default_factory=utcnow)
    auto_yes: bool = False
    skip_permissions: bool = False
    terminal_session: Optional[TerminalSession] = None
    cached_preview: str = field(default="", repr=False)
    cached_diff_stats: DiffStats = DiffStats()
    attach_handle: Optional[AttachHandle] = field(default=None, repr=False)
    # Bumped whenever a new process starts; background results from an
    # older generation are discarded.
    generation: int = field(default=0, repr=False)

    def __post_init__(self):
        self.title = self.title[:MAX_TITLE_LENGTH]
        self.program = Program(self.program)
        self.status = InstanceStatus(self.status)
        if not self.handle_name:
            self.handle_name = sanitize_name(self.title, self.id)
        self._lock = threading.RLock()
        self.log = get_structured_logger("instance").with_context(instance=self.id[:8])

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def pid(self) -> Optional[int]:
        return self.terminal_session.pid if self.terminal_session else None

    # -- internal helpers ----------------------------------------------------

    def _release_attach(self) -> None:
        if self.attach_handle is not None:
            self.attach_handle.close()
            self.attach_handle = None

    def _mark_session_gone(self) -> None:
        self._release_attach()
        self.terminal_session = None
        self.status = InstanceStatus.READY

    def _touch(self) -> None:
        self.last_active_at = utcnow()

    # -- lifecycle -----------------------------------------------------------

    def start(self, resume_conversation: bool = False) -> None:
        """ready (or new) -> running.

        Picks up a tmux session of the same name if one outlived us,
        otherwise launches the assistant.

        Raises:
            InvalidStateError: already running/paused, or dead
            SpawnError: binary missing or tmux refused; status unchanged
        """
        with self._lock:
            if self.status is not InstanceStatus.READY:
                raise InvalidStateError(f"cannot start '{self.title}' while {self.status.value}")

            if self.sessions.exists(self.handle_name):
                try:
                    session = self.sessions.reattach(self.handle_name)
                except SessionNotFoundError:
                    session = None
                if session is not None:
                    self.terminal_session = session
                    self.generation += 1
                    self.status = InstanceStatus.RUNNING
                    self._touch()
                    self.log.info("Re-attached to surviving session", handle=self.handle_name)
                    return

            if not self.workspaces.exists(self.workspace):
                raise SpawnError(f"workspace {self.workspace.worktree_path} is missing; restart to restore it")

            command = build_command(self.program, self.skip_permissions, resume_conversation)
            self.terminal_session = self.sessions.create(
                self.handle_name, self.workspace.worktree_path, command
            )
            self.generation += 1
            self.status = InstanceStatus.RUNNING
            self._touch()
            self.log.info("Started", handle=self.handle_name, pid=self.pid)

    def pause(self) -> None:
        """running -> paused.

        Gives up interactive control; the assistant keeps running in tmux.

        Raises:
            InvalidStateError: not running, or the session has already exited
        """
        with self._lock:
            if self.status is not InstanceStatus.RUNNING:
                raise InvalidStateError(f"cannot pause '{self.title}' while {self.status.value}")
            if not self.sessions.exists(self.handle_name):
                self._mark_session_gone()
                raise InvalidStateError(f"'{self.title}' has exited")
            self._release_attach()
            self.status = InstanceStatus.PAUSED
            self.log.info("Paused")

    def resume(self) -> None:
        """paused -> running, re-attaching to the same process by name.

        Raises:
            InvalidStateError: not paused, or the session has exited
        """
        with self._lock:
            if self.status is not InstanceStatus.PAUSED:
                raise InvalidStateError(f"cannot resume '{self.title}' while {self.status.value}")
            try:
                self.terminal_session = self.sessions.reattach(self.handle_name)
            except SessionNotFoundError:
                self._mark_session_gone()
                raise InvalidStateError(f"'{self.title}' has exited") from None
            self.generation += 1
            self.status = InstanceStatus.RUNNING
            self._touch()
            self.log.info("Resumed", pid=self.pid)

    def restart(self, options: Optional[RestartOptions] = None) -> None:
        """any -> running with a brand-new process in the same workspace.

        Preconditions (tmux, the program binary, the workspace) are checked
        before the old session is touched, so a restart that cannot work
        leaves the instance as it was.

        Raises:
            VcsError: the workspace could not be restored; status unchanged
            SpawnError: tmux or the program is missing (status unchanged), or
                tmux refused the new session (status becomes ready)
        """
        options = options or RestartOptions()
        command = build_command(self.program, options.skip_permissions, options.resume_conversation)
        with self._lock:
            self.sessions.check_command(command)
            self.workspaces.ensure(self.workspace)

            self._release_attach()
            self.sessions.kill(self.handle_name)
            self.terminal_session = None
            if self.status is not InstanceStatus.DEAD:
                self.status = InstanceStatus.READY

            session = self.sessions.create(self.handle_name, self.workspace.worktree_path, command)

            self.terminal_session = session
            self.skip_permissions = options.skip_permissions
            self.generation += 1
            self.status = InstanceStatus.RUNNING
            self._touch()
            self.log.info("Restarted", pid=self.pid, skip_permissions=options.skip_permissions)

    def check_liveness(self, alive: Optional[bool] = None) -> bool:
        """Demote running/paused to ready if the tmux session is gone.

        Args:
            alive: a liveness observation made elsewhere; queried if None

        Returns:
            True if the status changed
        """
        with self._lock:
            if not self.is_live:
                return False
            if alive is None:
                alive = self.sessions.exists(self.handle_name)
            if alive:
                return False
            self._mark_session_gone()
            self.log.info("Session exited; now ready")
            return True

    def kill(self) -> None:
        """any -> dead. Terminates the session and its process tree.

        Idempotent. The workspace is left in place; see ``delete``.
        """
        with self._lock:
            self._release_attach()
            self.sessions.kill(self.handle_name)
            self.terminal_session = None
            if self.status is not InstanceStatus.DEAD:
                self.status = InstanceStatus.DEAD
                self.log.info("Killed")

    def delete(self, force: bool = False) -> None:
        """Kill, then erase the workspace checkout and branch.

        Raises:
            VcsError: uncommitted changes and ``force`` is False. The
                instance is dead but its workspace survives.
        """
        with self._lock:
            self.kill()
            self.workspaces.remove(self.workspace, force=force)
            self.log.info("Deleted workspace", branch=self.workspace.branch_name)

    def attach(self) -> AttachHandle:
        """Hand interactive control to the caller.

        A paused instance is resumed first. The caller runs the handle;
        detaching leaves the assistant running.

        Raises:
            InvalidStateError: ready or dead
        """
        with self._lock:
            self.check_liveness()
            if not self.is_live:
                raise InvalidStateError(f"cannot attach to '{self.title}' while {self.status.value}")
            if self.status is InstanceStatus.PAUSED:
                self.resume()
            self._release_attach()
            try:
                handle = self.sessions.attach(self.handle_name)
            except SessionNotFoundError:
                self._mark_session_gone()
                raise InvalidStateError(f"'{self.title}' has exited") from None
            self.attach_handle = handle
            self._touch()
            return handle

    def send_prompt(self, text: str) -> None:
        """Type a prompt into the assistant and submit it."""
        with self._lock:
            if self.status is not InstanceStatus.RUNNING:
                raise InvalidStateError(f"cannot send a prompt to '{self.title}' while {self.status.value}")
            try:
                self.sessions.send_text(self.handle_name, text)
            except SessionNotFoundError:
                self._mark_session_gone()
                raise InvalidStateError(f"'{self.title}' has exited") from None
            self._touch()

    def update_cache(self, preview: Optional[str], diff_stats: Optional[DiffStats]) -> None:
        with self._lock:
            if preview is not None:
                self.cached_preview = preview
            if diff_stats is not None:
                self.cached_diff_stats = diff_stats

    # -- persistence ---------------------------------------------------------

    def to_dict(self) -> dict:
        """Durable fields only; never PIDs, PTYs or caches."""
        with self._lock:
            return {
                "id": self.id,
                "title": self.title,
                "status": self.status.value,
                "program": self.program.value,
                "handle_name": self.handle_name,
                "auto_yes": self.auto_yes,
                "skip_permissions": self.skip_permissions,
                "created_at": self.created_at.isoformat(),
                "last_active_at": self.last_active_at.isoformat(),
                "workspace": self.workspace.to_dict(),
            }

    @classmethod
    def from_dict(
        cls,
        data: dict,
        sessions: TerminalSessionManager,
        workspaces: WorkspaceManager,
    ) -> "Instance":
        """Rebuild an instance from a persisted record.

        Unknown keys are ignored and optional ones defaulted.

        Raises:
            PersistenceError: a required field is missing or malformed
        """
        if not isinstance(data, dict):
            raise PersistenceError(f"expected an object, got {type(data).__name__}")
        try:
            return cls(
                id=str(data["id"]),
                title=str(data["title"]),
                program=Program(data.get("program", Program.CLAUDE.value)),
                status=InstanceStatus(data.get("status", InstanceStatus.READY.value)),
                workspace=Workspace.from_dict(data["workspace"]),
                handle_name=data.get("handle_name") or "",
                auto_yes=bool(data.get("auto_yes", False)),
                skip_permissions=bool(data.get("skip_permissions", False)),
                created_at=_parse_time(data.get("created_at")),
                last_active_at=_parse_time(data.get("last_active_at")),
                sessions=sessions,
                workspaces=workspaces,
            )
        except (KeyError, TypeError, ValueError) as e:
            ident = data.get("id", "?")
            raise PersistenceError(f"unreadable instance record {ident}: {e!r}") from e
