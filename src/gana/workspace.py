"""
Workspace management: one git branch + worktree per instance.

Every instance works in its own checkout so that assistants running side by
side never touch each other's files. Checkouts live under
``<state_dir>/worktrees``; branches are named ``<branch_prefix><title>``.
"""

import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from .exceptions import GitNotFoundError, PathCollisionError, VcsError
from .logging_config import get_logger

logger = get_logger("workspace")

MAX_TITLE_LENGTH = 64
MAX_BRANCH_ATTEMPTS = 5
GIT_TIMEOUT = 60


class DiffStats(NamedTuple):
    added: int = 0
    removed: int = 0

    @property
    def is_empty(self) -> bool:
        return self.added == 0 and self.removed == 0


@dataclass(frozen=True)
class Workspace:
    """An isolated checkout bound to a branch."""

    repo_root: Path
    worktree_path: Path
    branch_name: str
    base_commit: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "repo_root": str(self.repo_root),
            "worktree_path": str(self.worktree_path),
            "branch_name": self.branch_name,
            "base_commit": self.base_commit,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Workspace":
        return cls(
            repo_root=Path(data["repo_root"]),
            worktree_path=Path(data["worktree_path"]),
            branch_name=data["branch_name"],
            base_commit=data.get("base_commit"),
        )


def sanitize_branch_name(name: str) -> str:
    """Turn a free-form title into something git accepts as a branch name.

    Lowercases, turns spaces into hyphens, drops everything outside
    ``[a-z0-9/_.-]`` and tidies up separators:

        >>> sanitize_branch_name("USER/Feature Branch!@#$%^&*()/v1.0")
        'user/feature-branch/v1.0'
    """
    name = name.lower().replace(" ", "-")
    name = re.sub(r"[^a-z0-9/_.\-]", "", name)
    name = re.sub(r"-+", "-", name)
    name = re.sub(r"/+", "/", name)
    name = re.sub(r"\.{2,}", ".", name)
    # No path component may start with '.' or end with '.lock'
    parts = [p.lstrip(".") for p in name.split("/")]
    parts = [p[:-5] if p.endswith(".lock") else p for p in parts]
    name = "/".join(p for p in parts if p)
    return name.strip("-/.")


def _path_slug(title: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9_-]+", "-", title[:MAX_TITLE_LENGTH]).strip("-")
    return slug[:40].strip("-") or "session"


def _count_lines(path: Path) -> int:
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError:
        return 0
    if b"\0" in data[:8000]:
        return 0  # binary
    if not data:
        return 0
    return data.count(b"\n") + (0 if data.endswith(b"\n") else 1)


class WorkspaceManager:
    """Creates, removes and inspects per-instance git worktrees.

    Operations against the same repository are serialized, so two
    instances created with the same title at the same moment still end up
    on different branches.
    """

    def __init__(self, worktrees_dir: Path, branch_prefix: str = "gana/"):
        self.worktrees_dir = Path(worktrees_dir)
        self.branch_prefix = branch_prefix or ""
        self._repo_locks: Dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -- git plumbing --------------------------------------------------------

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                ["git", *args],
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT,
            )
        except FileNotFoundError as e:
            raise GitNotFoundError("git is required but not found on PATH") from e
        except (OSError, subprocess.SubprocessError) as e:
            raise VcsError(f"git {' '.join(args)}: {e}") from e
        if check and result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip()
            raise VcsError(f"git {' '.join(args)} failed: {detail}")
        return result

    def _repo_lock(self, repo_root: Path) -> threading.Lock:
        with self._locks_guard:
            return self._repo_locks.setdefault(repo_root, threading.Lock())

    def _branch_exists(self, repo_root: Path, branch: str) -> bool:
        result = self._git(
            "-C", str(repo_root), "show-ref", "--verify", "--quiet", f"refs/heads/{branch}",
            check=False,
        )
        return result.returncode == 0

    def _valid_branch(self, repo_root: Path, branch: str) -> bool:
        result = self._git("-C", str(repo_root), "check-ref-format", "--branch", branch, check=False)
        return result.returncode == 0

    def find_repo_root(self, path: Path) -> Path:
        """Top-level directory of the repository containing ``path``."""
        result = self._git("-C", str(path), "rev-parse", "--show-toplevel", check=False)
        if result.returncode != 0:
            raise VcsError(f"{path} is not inside a git repository")
        return Path(result.stdout.strip())

    # -- naming --------------------------------------------------------------

    def worktree_path_for(self, title: str, instance_id: str, created_at: datetime) -> Path:
        stamp = created_at.strftime("%Y%m%d%H%M%S")
        return self.worktrees_dir / f"{_path_slug(title)}-{stamp}-{instance_id[:8]}"

    def branch_candidates(self, title: str, instance_id: str) -> List[str]:
        """Branch names to try, in order: plain, then disambiguated by id."""
        base = self.branch_prefix + (sanitize_branch_name(title[:MAX_TITLE_LENGTH]) or "session")
        short_id = instance_id[:8]
        candidates = [base, f"{base}-{short_id}"]
        candidates.extend(f"{base}-{short_id}-{n}" for n in range(2, MAX_BRANCH_ATTEMPTS))
        return candidates[:MAX_BRANCH_ATTEMPTS]

    def _pick_branch(self, repo_root: Path, title: str, instance_id: str) -> str:
        for branch in self.branch_candidates(title, instance_id):
            if not self._valid_branch(repo_root, branch):
                raise VcsError(f"'{branch}' is not a valid branch name")
            if not self._branch_exists(repo_root, branch):
                return branch
        raise PathCollisionError(
            f"no free branch name for '{title}' after {MAX_BRANCH_ATTEMPTS} attempts"
        )

    # -- lifecycle -----------------------------------------------------------

    def create(
        self,
        repo_root: Path,
        title: str,
        instance_id: str,
        created_at: Optional[datetime] = None,
    ) -> Workspace:
        """Create a branch from HEAD and check it out into a new worktree.

        Either both the branch and the checkout exist afterwards, or
        neither does.

        Raises:
            VcsError: not a repository, no commits yet, or git refused
            PathCollisionError: no unique path or branch could be derived
        """
        created_at = created_at or datetime.now(timezone.utc)
        repo_root = self.find_repo_root(Path(repo_root))

        with self._repo_lock(repo_root):
            head = self._git("-C", str(repo_root), "rev-parse", "--verify", "HEAD^{commit}", check=False)
            if head.returncode != 0:
                raise VcsError(f"{repo_root} has no commits; create an initial commit first")
            base_commit = head.stdout.strip()

            path = self.worktree_path_for(title, instance_id, created_at)
            if path.exists():
                raise PathCollisionError(f"worktree path already exists: {path}")

            branch = self._pick_branch(repo_root, title, instance_id)
            self.worktrees_dir.mkdir(parents=True, exist_ok=True)

            try:
                self._git("-C", str(repo_root), "worktree", "add", "-b", branch, str(path), base_commit)
            except VcsError:
                self._rollback(repo_root, branch, path)
                raise

        logger.info(f"Created worktree {path} on {branch}")
        return Workspace(repo_root, path, branch, base_commit)

    def _rollback(self, repo_root: Path, branch: str, path: Path) -> None:
        if path.exists():
            self._git("-C", str(repo_root), "worktree", "remove", "--force", str(path), check=False)
            shutil.rmtree(path, ignore_errors=True)
        self._git("-C", str(repo_root), "worktree", "prune", check=False)
        if self._branch_exists(repo_root, branch):
            self._git("-C", str(repo_root), "branch", "-D", branch, check=False)

    def exists(self, workspace: Workspace) -> bool:
        return workspace.worktree_path.is_dir()

    def ensure(self, workspace: Workspace) -> None:
        """Re-create a missing checkout from its branch (or base commit).

        Raises:
            VcsError: the branch is checked out in the main repository, or
                git refused
        """
        if self.exists(workspace):
            return
        if self.is_branch_checked_out(workspace):
            raise VcsError(
                f"{workspace.branch_name} is checked out in {workspace.repo_root}; "
                "switch that checkout to another branch first"
            )
        repo = str(workspace.repo_root)
        with self._repo_lock(workspace.repo_root):
            self._git("-C", repo, "worktree", "prune", check=False)
            if self._branch_exists(workspace.repo_root, workspace.branch_name):
                self._git("-C", repo, "worktree", "add", str(workspace.worktree_path), workspace.branch_name)
            else:
                start = workspace.base_commit or "HEAD"
                self._git(
                    "-C", repo, "worktree", "add", "-b", workspace.branch_name,
                    str(workspace.worktree_path), start,
                )
        logger.info(f"Restored worktree {workspace.worktree_path}")

    def is_dirty(self, workspace: Workspace) -> bool:
        if not self.exists(workspace):
            return False
        result = self._git("-C", str(workspace.worktree_path), "status", "--porcelain", check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def remove(self, workspace: Workspace, force: bool = False) -> None:
        """Delete the checkout and its branch.

        A checkout that is already gone is not an error. Uncommitted changes
        are, unless ``force`` is set.

        Raises:
            VcsError: the checkout has uncommitted changes and force is False
        """
        repo = str(workspace.repo_root)
        path = workspace.worktree_path

        with self._repo_lock(workspace.repo_root):
            if path.exists():
                if not force and self.is_dirty(workspace):
                    raise VcsError(
                        f"{path} has uncommitted changes; delete with force to discard them"
                    )
                self._git("-C", repo, "worktree", "remove", "--force", str(path), check=False)
                if path.exists():
                    shutil.rmtree(path)

            self._git("-C", repo, "worktree", "prune", check=False)
            if self._branch_exists(workspace.repo_root, workspace.branch_name):
                self._git("-C", repo, "branch", "-D", workspace.branch_name)

        logger.info(f"Removed worktree {path} and branch {workspace.branch_name}")

    def cleanup_worktrees(self) -> int:
        """Remove every checkout under the worktrees directory.

        Returns:
            Number of directories removed
        """
        if not self.worktrees_dir.is_dir():
            return 0

        repos = set()
        removed = 0
        for path in sorted(self.worktrees_dir.iterdir()):
            if not path.is_dir():
                continue
            common = self._git("-C", str(path), "rev-parse", "--path-format=absolute",
                               "--git-common-dir", check=False)
            if common.returncode == 0:
                repo_root = Path(common.stdout.strip()).parent
                repos.add(repo_root)
                self._git("-C", str(repo_root), "worktree", "remove", "--force", str(path), check=False)
            if path.exists():
                shutil.rmtree(path)
            removed += 1

        for repo_root in repos:
            self._git("-C", str(repo_root), "worktree", "prune", check=False)
        return removed

    # -- publishing ----------------------------------------------------------

    def is_branch_checked_out(self, workspace: Workspace) -> bool:
        """True if the main repository itself has the instance branch checked out."""
        result = self._git("-C", str(workspace.repo_root), "symbolic-ref", "HEAD", check=False)
        return result.returncode == 0 and result.stdout.strip() == f"refs/heads/{workspace.branch_name}"

    def commit_changes(self, workspace: Workspace, message: str) -> bool:
        """Stage everything in the checkout and commit it, skipping hooks.

        Returns:
            False if there was nothing to commit

        Raises:
            VcsError: the checkout is missing or git refused
        """
        if not self.exists(workspace):
            raise VcsError(f"worktree is missing: {workspace.worktree_path}")
        if not self.is_dirty(workspace):
            return False
        cwd = str(workspace.worktree_path)
        self._git("-C", cwd, "add", "--all")
        self._git("-C", cwd, "commit", "--no-verify", "-m", message)
        logger.info(f"Committed changes on {workspace.branch_name}")
        return True

    def push_changes(self, workspace: Workspace, message: str, remote: str = "origin") -> bool:
        """Commit anything pending, then push the branch and set its upstream.

        Returns:
            True if a commit was made before pushing

        Raises:
            VcsError: the commit or the push failed
        """
        committed = self.commit_changes(workspace, message)
        self._git("-C", str(workspace.worktree_path), "push", "-u", remote, workspace.branch_name)
        logger.info(f"Pushed {workspace.branch_name} to {remote}")
        return committed

    # -- inspection ----------------------------------------------------------

    def diff_stats(self, workspace: Workspace) -> DiffStats:
        """Lines added/removed since the branch point, untracked files included.

        Read-only. Returns DiffStats(0, 0) when there is nothing to compare
        against or git fails.
        """
        if not workspace.base_commit or not self.exists(workspace):
            return DiffStats()

        cwd = str(workspace.worktree_path)
        try:
            numstat = self._git("-C", cwd, "diff", "--numstat", workspace.base_commit, check=False)
            if numstat.returncode != 0:
                return DiffStats()

            added = removed = 0
            for line in numstat.stdout.splitlines():
                parts = line.split("\t")
                if len(parts) < 3 or parts[0] == "-":
                    continue
                added += int(parts[0])
                removed += int(parts[1])

            untracked = self._git(
                "-C", cwd, "ls-files", "--others", "--exclude-standard", "-z", check=False
            )
            if untracked.returncode == 0:
                for name in filter(None, untracked.stdout.split("\0")):
                    added += _count_lines(workspace.worktree_path / name)
        except (VcsError, ValueError) as e:
            logger.debug(f"diff_stats failed for {cwd}: {e}")
            return DiffStats()

        return DiffStats(added, removed)

    def diff_text(self, workspace: Workspace) -> str:
        """Unified diff of tracked changes since the branch point."""
        if not workspace.base_commit or not self.exists(workspace):
            return ""
        try:
            result = self._git(
                "-C", str(workspace.worktree_path), "diff", workspace.base_commit, check=False
            )
        except VcsError:
            return ""
        return result.stdout if result.returncode == 0 else ""
