"""
Unit test configuration for gana.

Provides an in-memory tmux, a stand-in workspace manager, real throwaway git
repositories, and an isolated state directory for every test.
"""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from gana.config import Config
from gana.instance import Instance
from gana.mocks import MockTmux
from gana.programs import Program
from gana.registry import Registry
from gana.settings import Paths
from gana.tmux_manager import TerminalSessionManager
from gana.workspace import DiffStats, Workspace, WorkspaceManager


@pytest.fixture(autouse=True)
def isolated_state_dir(tmp_path, monkeypatch):
    """Point GANA_STATE_DIR at a temp directory so nothing touches ~/.gana."""
    state_dir = tmp_path / "state"
    monkeypatch.setenv("GANA_STATE_DIR", str(state_dir))
    return state_dir


@pytest.fixture
def paths(isolated_state_dir):
    return Paths(isolated_state_dir).ensure()


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def mock_tmux():
    return MockTmux()


@pytest.fixture
def process_killer():
    return MagicMock()


@pytest.fixture
def sessions(mock_tmux, process_killer):
    return TerminalSessionManager(tmux=mock_tmux, process_killer=process_killer, check_program=False)


@pytest.fixture
def fake_workspaces():
    """WorkspaceManager stand-in: every checkout exists and nothing changed."""
    manager = MagicMock(spec=WorkspaceManager)
    manager.exists.return_value = True
    manager.diff_stats.return_value = DiffStats(0, 0)
    return manager


@pytest.fixture
def make_instance(tmp_path, sessions, fake_workspaces):
    """Factory for instances backed by MockTmux and fake_workspaces."""
    counter = {"n": 0}

    def _make(title="fix-bug", program=Program.CLAUDE, **kwargs):
        counter["n"] += 1
        worktree = tmp_path / "worktrees" / f"{title}-{counter['n']}"
        worktree.mkdir(parents=True, exist_ok=True)
        workspace = Workspace(
            repo_root=tmp_path / "repo",
            worktree_path=worktree,
            branch_name=f"gana/{title}",
            base_commit="0" * 40,
        )
        return Instance(
            title=title,
            program=program,
            workspace=workspace,
            sessions=kwargs.pop("sessions", sessions),
            workspaces=kwargs.pop("workspaces", fake_workspaces),
            **kwargs,
        )

    return _make


@pytest.fixture
def registry(paths, sessions, fake_workspaces):
    return Registry(paths.instances_file, sessions, fake_workspaces, lock_path=paths.instances_lock)


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-C", str(repo), *args],
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


@pytest.fixture
def git_env(monkeypatch):
    """Deterministic git identity, independent of the user's config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", "/dev/null")


@pytest.fixture
def git_repo(tmp_path, git_env):
    """A repository with one commit containing README.md."""
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    (repo / "README.md").write_text("hello\n")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def run_git():
    return _git
