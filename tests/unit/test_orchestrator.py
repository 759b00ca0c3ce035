"""
Unit tests for the Orchestrator.

Creation runs on a background executor, so tests wait on the returned
future and then look at queued updates.
"""

import pytest

from gana.config import Config
from gana.exceptions import InstanceNotFoundError, InvalidStateError, SpawnError, VcsError
from gana.instance import InstanceStatus
from gana.orchestrator import (
    UPDATE_CREATED,
    UPDATE_FAILED,
    UPDATE_STATUS,
    Orchestrator,
)
from gana.workspace import Workspace


@pytest.fixture
def workspace_factory(tmp_path, fake_workspaces):
    """Make fake_workspaces.create hand out real directories."""

    def _create(repo_root, title, instance_id, created_at=None):
        path = tmp_path / "worktrees" / f"{title}-{instance_id[:8]}"
        path.mkdir(parents=True)
        return Workspace(tmp_path / "repo", path, f"gana/{title}", "0" * 40)

    fake_workspaces.create.side_effect = _create
    return fake_workspaces


@pytest.fixture
def orchestrator(registry, workspace_factory):
    orch = Orchestrator(registry, Config(), trust_timeout=0)
    yield orch
    orch.shutdown(wait=True)


def _create(orchestrator, title="fix-bug", **kwargs):
    return orchestrator.create_instance(title, repo_root=kwargs.pop("repo_root", "/repo"), **kwargs).result(timeout=5)


class TestCreate:
    """Test background instance creation."""

    def test_creates_running_registered_instance(self, orchestrator, mock_tmux, registry):
        instance = _create(orchestrator)

        assert instance.status is InstanceStatus.RUNNING
        assert registry.get(instance.id) is instance
        assert instance.handle_name in mock_tmux.sessions
        assert mock_tmux.sessions[instance.handle_name].command == "claude"

    def test_created_update_is_queued(self, orchestrator):
        instance = _create(orchestrator)

        updates = orchestrator.poll_updates()

        assert any(u.kind == UPDATE_CREATED and u.instance_id == instance.id for u in updates)

    def test_program_override(self, orchestrator, mock_tmux):
        instance = _create(orchestrator, program="aider")
        assert mock_tmux.sessions[instance.handle_name].command == "aider"

    def test_default_program_from_config(self, registry, workspace_factory, mock_tmux):
        orch = Orchestrator(registry, Config(default_program="gemini"), trust_timeout=0)
        try:
            instance = _create(orch)
        finally:
            orch.shutdown()
        assert instance.program.value == "gemini"

    def test_auto_yes_from_config(self, registry, workspace_factory):
        orch = Orchestrator(registry, Config(auto_yes=True), trust_timeout=0)
        try:
            instance = _create(orch)
        finally:
            orch.shutdown()
        assert instance.auto_yes is True

    def test_initial_prompt_is_sent(self, orchestrator, mock_tmux):
        instance = _create(orchestrator, prompt="write the tests")
        assert (instance.handle_name, "write the tests", True) in mock_tmux.sent_keys

    def test_empty_title_rejected(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.create_instance("   ")

    def test_unknown_program_rejected(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.create_instance("x", program="vim")

    def test_spawn_failure_rolls_back(self, orchestrator, mock_tmux, registry, workspace_factory):
        mock_tmux.fail_new_session = True

        future = orchestrator.create_instance("fix-bug", repo_root="/repo")
        with pytest.raises(SpawnError):
            future.result(timeout=5)

        assert len(registry) == 0
        workspace_factory.remove.assert_called_once()
        assert workspace_factory.remove.call_args.kwargs == {"force": True}
        updates = orchestrator.poll_updates()
        assert [u.kind for u in updates] == [UPDATE_FAILED]
        assert updates[0].title == "fix-bug"

    def test_vcs_failure_never_launches(self, orchestrator, mock_tmux, registry, workspace_factory):
        workspace_factory.create.side_effect = VcsError("not a repository")

        with pytest.raises(VcsError):
            orchestrator.create_instance("x", repo_root="/nowhere").result(timeout=5)

        assert mock_tmux.sessions == {}
        assert len(registry) == 0

    def test_trust_prompt_answered_during_creation(self, registry, workspace_factory, mock_tmux):
        """A prompt that is already on screen at launch is accepted."""
        original_new_session = mock_tmux.new_session

        def new_session_with_prompt(session, *args):
            ok = original_new_session(session, *args)
            mock_tmux.set_pane_content(session, "Do you trust the files in this folder?")
            return ok

        mock_tmux.new_session = new_session_with_prompt
        orch = Orchestrator(registry, Config(), trust_timeout=1.0)
        try:
            instance = _create(orch)
        finally:
            orch.shutdown()

        assert (instance.handle_name, "Enter", False) in mock_tmux.sent_keys


class TestResolve:
    """Test instance lookup by reference."""

    def test_by_id_prefix_and_title(self, orchestrator):
        instance = _create(orchestrator, "unique-title")

        assert orchestrator.resolve(instance.id) is instance
        assert orchestrator.resolve(instance.id[:6]) is instance
        assert orchestrator.resolve("unique-title") is instance

    def test_unknown(self, orchestrator):
        with pytest.raises(InstanceNotFoundError):
            orchestrator.resolve("nothing")

    def test_ambiguous_title(self, orchestrator):
        _create(orchestrator, "same")
        _create(orchestrator, "same")
        with pytest.raises(InstanceNotFoundError, match="ambiguous"):
            orchestrator.resolve("same")

    def test_get_unknown(self, orchestrator):
        with pytest.raises(InstanceNotFoundError):
            orchestrator.get("nope")


class TestLifecycle:
    """Test id-addressed lifecycle operations."""

    def test_pause_resume_persist(self, orchestrator, paths):
        import json

        instance = _create(orchestrator)

        orchestrator.pause(instance.id)
        assert json.loads(paths.instances_file.read_text())["instances"][0]["status"] == "paused"

        orchestrator.resume(instance.id)
        assert json.loads(paths.instances_file.read_text())["instances"][0]["status"] == "running"

    def test_failed_transition_still_persists_demotion(self, orchestrator, mock_tmux, paths):
        import json

        instance = _create(orchestrator)
        mock_tmux.kill_session(instance.handle_name)

        with pytest.raises(InvalidStateError):
            orchestrator.pause(instance.id)

        assert json.loads(paths.instances_file.read_text())["instances"][0]["status"] == "ready"

    def test_kill_then_start_is_rejected(self, orchestrator):
        instance = _create(orchestrator)
        orchestrator.kill(instance.id)

        with pytest.raises(InvalidStateError):
            orchestrator.start(instance.id)

    def test_start_ready_instance_resumes_conversation(self, orchestrator, mock_tmux):
        instance = _create(orchestrator)
        mock_tmux.kill_session(instance.handle_name)
        instance.check_liveness()

        orchestrator.start(instance.id)

        assert mock_tmux.sessions[instance.handle_name].command == "claude --continue"

    def test_restart(self, orchestrator):
        instance = _create(orchestrator)
        pid = instance.pid

        orchestrator.restart(instance.id)

        assert instance.pid != pid

    def test_delete_forgets_instance(self, orchestrator, registry, workspace_factory):
        instance = _create(orchestrator)
        orchestrator.poll_updates()

        orchestrator.delete(instance.id)

        assert instance.id not in registry
        workspace_factory.remove.assert_called_once_with(instance.workspace, force=False)
        assert [u.kind for u in orchestrator.poll_updates()] == [UPDATE_STATUS]

    def test_delete_dirty_keeps_dead_instance(self, orchestrator, registry, workspace_factory):
        instance = _create(orchestrator)
        workspace_factory.remove.side_effect = VcsError("uncommitted changes")

        with pytest.raises(VcsError):
            orchestrator.delete(instance.id)

        assert registry.get(instance.id) is instance
        assert instance.status is InstanceStatus.DEAD

    def test_attach_returns_handle(self, orchestrator):
        instance = _create(orchestrator)
        handle = orchestrator.attach(instance.id)
        assert handle.session_name == instance.handle_name
        handle.close()

    def test_diff_text(self, orchestrator, workspace_factory):
        workspace_factory.diff_text.return_value = "+added"
        instance = _create(orchestrator)
        assert orchestrator.diff_text(instance.id) == "+added"

    def test_push_uses_title_as_default_message(self, orchestrator, workspace_factory):
        workspace_factory.push_changes.return_value = True
        instance = _create(orchestrator)

        assert orchestrator.push(instance.id) is True

        workspace_factory.push_changes.assert_called_once_with(
            instance.workspace, "[gana] update from 'fix-bug'"
        )

    def test_push_with_message(self, orchestrator, workspace_factory):
        workspace_factory.push_changes.return_value = False
        instance = _create(orchestrator)

        assert orchestrator.push(instance.id, "ship it") is False
        workspace_factory.push_changes.assert_called_once_with(instance.workspace, "ship it")

    def test_push_failure_propagates(self, orchestrator, workspace_factory):
        workspace_factory.push_changes.side_effect = VcsError("no remote")
        instance = _create(orchestrator)

        with pytest.raises(VcsError):
            orchestrator.push(instance.id)
        assert instance.status is InstanceStatus.RUNNING


class TestRefresh:
    """Test tick and poll_updates."""

    def test_exited_session_reported_as_status_change(self, orchestrator, mock_tmux):
        import time

        instance = _create(orchestrator)
        orchestrator.poll_updates()
        mock_tmux.kill_session(instance.handle_name)

        assert orchestrator.tick() == [instance.id]
        updates = []
        deadline = time.monotonic() + 5
        while not updates and time.monotonic() < deadline:
            updates = orchestrator.poll_updates()
            time.sleep(0.01)

        assert [(u.kind, u.instance_id) for u in updates] == [(UPDATE_STATUS, instance.id)]
        assert instance.status is InstanceStatus.READY


class TestReset:
    def test_reset_deletes_everything(self, orchestrator, registry, mock_tmux, workspace_factory):
        _create(orchestrator, "one")
        _create(orchestrator, "two")
        workspace_factory.cleanup_worktrees.return_value = 0

        report = orchestrator.reset()

        assert report.instances == 2
        assert len(registry) == 0
        assert mock_tmux.sessions == {}
        assert workspace_factory.remove.call_count == 2
