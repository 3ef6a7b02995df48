"""Tests for pipeline orchestration."""

import subprocess
import time
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from work_pipeline.config import Config
from work_pipeline.core import pipeline as pipeline_mod
from work_pipeline.core import registry as registry_mod
from work_pipeline.core import tasks as tasks_mod
from work_pipeline.core.errors import (
    AgentAlreadyRunningError,
    AgentNotFoundError,
    BranchNotSetError,
    DirtyWorktreeError,
    MissingPlanError,
    PipelineError,
    PreconditionError,
    TaskNotFoundError,
    TaskRejectedError,
    UnsupportedPlatformError,
)
from work_pipeline.core.launcher import is_alive
from work_pipeline.core.paths import get_registry_path
from work_pipeline.integrations.git import worktree_list
from work_pipeline.store.models import Agent, PhaseAction, Task


def _registry(repo: Path) -> Path:
    return get_registry_path(repo, "tester")


def _both_copies(repo: Path, rel: str, worktree: str):
    return tasks_mod.read_task(repo / rel), tasks_mod.read_task(Path(worktree) / rel)


def _wait_for_log(log_file, text, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if Path(log_file).exists() and text in Path(log_file).read_text():
            return True
        time.sleep(0.05)
    return False


class TestStartPreconditions:
    def test_missing_plan(self, workflow_repo, config, ready_task):
        rel = ready_task(prd=False)
        with pytest.raises(MissingPlanError):
            pipeline_mod.start_pipeline(workflow_repo, rel, config)
        assert registry_mod.list_agents(_registry(workflow_repo)) == []
        assert not (workflow_repo.parent / "worktrees").exists()

    def test_missing_task(self, workflow_repo, config):
        with pytest.raises(TaskNotFoundError):
            pipeline_mod.start_pipeline(workflow_repo, ".workflow/tasks/01-01-ghost", config)

    def test_rejected_task(self, workflow_repo, config, ready_task):
        rel = ready_task()
        (workflow_repo / rel / "REJECTED.md").write_text("Out of scope for this quarter\n")
        with pytest.raises(TaskRejectedError) as exc:
            pipeline_mod.start_pipeline(workflow_repo, rel, config)
        assert "Out of scope" in str(exc.value)
        assert tasks_mod.read_task(workflow_repo / rel).status == "planning"

    def test_rejected_status(self, workflow_repo, config, ready_task):
        rel = ready_task(status="rejected")
        with pytest.raises(TaskRejectedError):
            pipeline_mod.start_pipeline(workflow_repo, rel, config)

    def test_branch_not_set(self, workflow_repo, config, ready_task):
        rel = ready_task(branch=None)
        with pytest.raises(BranchNotSetError):
            pipeline_mod.start_pipeline(workflow_repo, rel, config)

    def test_unsupported_platform(self, workflow_repo, config, ready_task):
        rel = ready_task()
        config.platform = "cursor"
        with pytest.raises(UnsupportedPlatformError):
            pipeline_mod.start_pipeline(workflow_repo, rel, config)
        assert not (workflow_repo.parent / "worktrees").exists()

    def test_no_developer(self, workflow_repo, config, ready_task):
        rel = ready_task()
        (workflow_repo / ".workflow" / ".developer").unlink()
        with pytest.raises(PipelineError) as exc:
            pipeline_mod.start_pipeline(workflow_repo, rel, config)
        assert exc.value.hint

    def test_errors_are_preconditions(self, workflow_repo, config, ready_task):
        rel = ready_task(prd=False)
        with pytest.raises(PreconditionError):
            pipeline_mod.start_pipeline(workflow_repo, rel, config)


class TestStart:
    def test_start_creates_worktree_and_registers(self, workflow_repo, config, ready_task):
        rel = ready_task(branch="feature/x")

        result = pipeline_mod.start_pipeline(workflow_repo, rel, config)

        expected = workflow_repo.parent / "worktrees" / "feature" / "x"
        assert Path(result.worktree_path) == expected
        assert result.agent.status == "running"
        assert result.agent.id == "add-login"
        assert result.agent.task_dir == rel
        assert is_alive(result.agent.pid)
        assert result.log_file == str(expected / ".agent-log")

        main, wt = _both_copies(workflow_repo, rel, result.worktree_path)
        assert main.status == wt.status == "in_progress"
        assert main.worktree_path == str(expected)
        assert main.base_branch == "main"

        agents = registry_mod.list_agents(_registry(workflow_repo))
        assert [a.id for a in agents] == ["add-login"]
        assert agents[0].session_id == result.agent.session_id

    def test_agent_runs_dispatch_in_worktree(self, workflow_repo, config, ready_task):
        result = pipeline_mod.start_pipeline(workflow_repo, ready_task(), config)
        assert _wait_for_log(result.log_file, "--agent dispatch")

    def test_absolute_task_dir(self, workflow_repo, config, ready_task):
        rel = ready_task()
        result = pipeline_mod.start_pipeline(workflow_repo, workflow_repo / rel, config)
        assert result.agent.task_dir == rel

    def test_already_running(self, workflow_repo, config, ready_task):
        rel = ready_task()
        pipeline_mod.start_pipeline(workflow_repo, rel, config)
        with pytest.raises(AgentAlreadyRunningError):
            pipeline_mod.start_pipeline(workflow_repo, rel, config)

    def test_restart_reuses_worktree(self, workflow_repo, config, ready_task):
        rel = ready_task(branch="feature/again")
        first = pipeline_mod.start_pipeline(workflow_repo, rel, config)
        pipeline_mod.stop_pipeline(workflow_repo, first.agent.id, config=config)

        second = pipeline_mod.start_pipeline(workflow_repo, rel, config)

        assert second.worktree_path == first.worktree_path
        assert second.agent.pid != first.agent.pid
        branches = [wt.branch for wt in worktree_list(workflow_repo)]
        assert branches.count("feature/again") == 1
        assert len(registry_mod.list_agents(_registry(workflow_repo))) == 1

    def test_restart_after_worktree_path_lost(self, workflow_repo, config, ready_task):
        rel = ready_task(branch="feature/lost")
        first = pipeline_mod.start_pipeline(workflow_repo, rel, config)
        pipeline_mod.stop_pipeline(workflow_repo, first.agent.id, config=config)
        tasks_mod.update_task(workflow_repo / rel, worktree_path=None)

        second = pipeline_mod.start_pipeline(workflow_repo, rel, config)
        assert second.worktree_path == first.worktree_path

    def test_restart_keeps_phase_from_worktree_copy(self, workflow_repo, config, ready_task):
        rel = ready_task(branch="feature/resume")
        first = pipeline_mod.start_pipeline(workflow_repo, rel, config)
        pipeline_mod.stop_pipeline(workflow_repo, first.agent.id, config=config)
        tasks_mod.set_phase(Path(first.worktree_path) / rel, 2)

        second = pipeline_mod.start_pipeline(workflow_repo, rel, config)

        main, wt = _both_copies(workflow_repo, rel, second.worktree_path)
        assert main.current_phase == wt.current_phase == 2
        assert main.status == wt.status == "in_progress"

    def test_stale_record_for_task_dir_is_replaced(self, workflow_repo, config, ready_task):
        rel = ready_task()
        dead = subprocess.Popen(["true"])
        dead.wait()
        registry_mod.add_agent(
            _registry(workflow_repo),
            Agent(
                id="old-name",
                worktree_path=str(workflow_repo.parent / "worktrees" / "old"),
                pid=dead.pid,
                started_at="2026-01-01T10:00:00",
                task_dir=rel,
            ),
        )

        result = pipeline_mod.start_pipeline(workflow_repo, rel, config)

        agents = registry_mod.list_agents(_registry(workflow_repo))
        assert [a.id for a in agents] == [result.agent.id]
        assert registry_mod.get_agent_by_task_dir(_registry(workflow_repo), rel).id == "add-login"

    def test_started_at_is_utc(self, workflow_repo, config, ready_task):
        result = pipeline_mod.start_pipeline(workflow_repo, ready_task(), config)
        started = datetime.fromisoformat(result.agent.started_at)
        assert started.utcoffset() == timedelta(0)


class TestStop:
    def test_stop_running(self, workflow_repo, config, ready_task):
        result = pipeline_mod.start_pipeline(workflow_repo, ready_task(), config)

        agent = pipeline_mod.stop_pipeline(workflow_repo, result.agent.id, config=config)

        assert agent.status == "stopped"
        assert not is_alive(result.agent.pid)
        assert Path(result.worktree_path).exists()

    def test_stop_already_dead(self, workflow_repo, config, ready_task):
        result = pipeline_mod.start_pipeline(workflow_repo, ready_task(), config)
        pipeline_mod.stop_pipeline(workflow_repo, result.agent.id, config=config)
        agent = pipeline_mod.stop_pipeline(workflow_repo, result.agent.id, config=config)
        assert agent.status == "stopped"

    def test_stop_unknown(self, workflow_repo, config):
        with pytest.raises(AgentNotFoundError):
            pipeline_mod.stop_pipeline(workflow_repo, "ghost", config=config)


class TestCleanup:
    def test_dirty_live_agent_refused(self, workflow_repo, config, ready_task):
        result = pipeline_mod.start_pipeline(workflow_repo, ready_task(), config)
        (Path(result.worktree_path) / "feature.py").write_text("x = 1\n")

        with pytest.raises(DirtyWorktreeError):
            pipeline_mod.cleanup_pipeline(workflow_repo, result.agent.id, config=config)

        assert registry_mod.get_agent(_registry(workflow_repo), result.agent.id) is not None
        assert Path(result.worktree_path).exists()
        assert is_alive(result.agent.pid)

    def test_cleanup_clean_worktree(self, workflow_repo, config, ready_task):
        rel = ready_task()
        result = pipeline_mod.start_pipeline(workflow_repo, rel, config)

        cleaned = pipeline_mod.cleanup_pipeline(workflow_repo, result.agent.id, config=config)

        assert cleaned.worktree_removed is True
        assert cleaned.archived_to is None
        assert not is_alive(result.agent.pid)
        assert not Path(result.worktree_path).exists()
        assert registry_mod.list_agents(_registry(workflow_repo)) == []
        assert (workflow_repo / rel).exists()

    def test_cleanup_force_and_archive(self, workflow_repo, config, ready_task):
        rel = ready_task()
        result = pipeline_mod.start_pipeline(workflow_repo, rel, config)
        (Path(result.worktree_path) / "README.md").write_text("edited")

        cleaned = pipeline_mod.cleanup_pipeline(
            workflow_repo, result.agent.id, archive=True, force=True, config=config
        )

        assert not Path(result.worktree_path).exists()
        assert not (workflow_repo / rel).exists()
        assert cleaned.archived_to.startswith(".workflow/tasks/archive/")
        assert tasks_mod.read_task(workflow_repo / cleaned.archived_to).status == "completed"

    def test_cleanup_unknown(self, workflow_repo, config):
        with pytest.raises(AgentNotFoundError):
            pipeline_mod.cleanup_pipeline(workflow_repo, "ghost", config=config)


class TestStatus:
    def test_status_of_running_agent(self, workflow_repo, config, ready_task):
        result = pipeline_mod.start_pipeline(workflow_repo, ready_task(), config)
        assert _wait_for_log(result.log_file, "args:")

        status = pipeline_mod.get_status(workflow_repo, result.agent.id, config)

        assert status.process_running is True
        assert status.resume_command is None
        assert status.task.status == "in_progress"
        assert status.task.phase == "0/4 (pending)"
        assert status.task.branch == "feature/login"
        assert status.modified_files == 0
        assert any(line.startswith("args:") for line in status.last_log_lines)

    def test_status_after_process_exits(self, workflow_repo, config, ready_task):
        result = pipeline_mod.start_pipeline(workflow_repo, ready_task(), config)
        pipeline_mod.stop_pipeline(workflow_repo, result.agent.id, config=config)
        (Path(result.worktree_path) / "new.py").write_text("")

        status = pipeline_mod.get_status(workflow_repo, result.agent.id, config)

        assert status.process_running is False
        assert status.agent.status == "stopped"
        assert status.modified_files == 1
        assert status.resume_command.endswith(f"--resume {result.agent.session_id}")

    def test_status_reads_worktree_copy(self, workflow_repo, config, ready_task):
        rel = ready_task()
        result = pipeline_mod.start_pipeline(workflow_repo, rel, config)
        tasks_mod.set_phase(Path(result.worktree_path) / rel, 2)

        status = pipeline_mod.get_status(workflow_repo, result.agent.id, config)
        assert status.task.current_phase == 2
        assert status.task.phase == "2/4 (check)"

    def test_list_statuses_syncs_dead_agents(self, workflow_repo, config):
        proc = subprocess.Popen(["true"])
        proc.wait()
        registry_mod.add_agent(
            _registry(workflow_repo),
            Agent(
                id="gone",
                worktree_path=str(workflow_repo.parent / "worktrees" / "gone"),
                pid=proc.pid,
                started_at=datetime.now().isoformat(),
                task_dir=".workflow/tasks/01-01-gone",
            ),
        )

        statuses = pipeline_mod.list_statuses(workflow_repo, config)

        assert len(statuses) == 1
        assert statuses[0].agent.status == "stopped"
        assert statuses[0].task.status == "unknown"
        assert statuses[0].to_dict()["agent"]["id"] == "gone"

    def test_status_unknown(self, workflow_repo, config):
        with pytest.raises(AgentNotFoundError):
            pipeline_mod.get_status(workflow_repo, "ghost", config)


class TestElapsed:
    NOW = datetime(2026, 3, 1, 12, 0, 0)

    @pytest.mark.parametrize(
        "delta, expected",
        [
            (timedelta(seconds=42), "42s"),
            (timedelta(minutes=5, seconds=3), "5m 3s"),
            (timedelta(hours=2, minutes=15, seconds=9), "2h 15m"),
        ],
    )
    def test_format(self, delta, expected):
        started = (self.NOW - delta).isoformat()
        assert pipeline_mod.format_elapsed(started, now=self.NOW) == expected

    def test_invalid(self):
        assert pipeline_mod.format_elapsed("yesterday") == "N/A"


class TestPhases:
    def test_advance_dual_writes(self, workflow_repo, config, ready_task):
        rel = ready_task()
        result = pipeline_mod.start_pipeline(workflow_repo, rel, config)

        assert pipeline_mod.advance_pipeline(workflow_repo, result.agent.id, config) == 1
        assert pipeline_mod.advance_pipeline(workflow_repo, result.agent.id, config) == 2

        main, wt = _both_copies(workflow_repo, rel, result.worktree_path)
        assert main.current_phase == wt.current_phase == 2
        assert main.status == wt.status

    def test_advance_at_last_phase_is_noop(self, workflow_repo, config, ready_task):
        rel = ready_task(current_phase=4)
        assert pipeline_mod.advance_pipeline(workflow_repo, rel, config) == 4
        assert tasks_mod.read_task(workflow_repo / rel).current_phase == 4

    def test_advance_by_task_name(self, workflow_repo, config, ready_task):
        ready_task()
        assert pipeline_mod.advance_pipeline(workflow_repo, "add-login", config) == 1

    def test_advance_unknown(self, workflow_repo, config):
        with pytest.raises(TaskNotFoundError):
            pipeline_mod.advance_pipeline(workflow_repo, "ghost", config)

    def test_complete_task(self, workflow_repo, config, ready_task):
        rel = ready_task()
        result = pipeline_mod.start_pipeline(workflow_repo, rel, config)

        pipeline_mod.complete_task(workflow_repo, rel, "https://github.com/o/r/pull/7")

        main, wt = _both_copies(workflow_repo, rel, result.worktree_path)
        for copy in (main, wt):
            assert copy.status == "completed"
            assert copy.pr_url == "https://github.com/o/r/pull/7"
            assert copy.current_phase == 4

    def test_complete_without_create_pr_phase(self, workflow_repo, ready_task):
        rel = ready_task(next_action=[PhaseAction(1, "implement"), PhaseAction(2, "check")])
        task = pipeline_mod.complete_task(workflow_repo, rel, None)
        assert task.current_phase == 2

    def test_active_pipeline_queries(self, workflow_repo, config, ready_task):
        rel = ready_task()
        assert not pipeline_mod.has_active_pipeline(workflow_repo, rel, config)
        assert pipeline_mod.get_agent_for_task(workflow_repo, rel, config) is None

        result = pipeline_mod.start_pipeline(workflow_repo, rel, config)
        assert pipeline_mod.has_active_pipeline(workflow_repo, rel, config)
        assert pipeline_mod.get_agent_for_task(workflow_repo, rel, config).id == result.agent.id

        pipeline_mod.stop_pipeline(workflow_repo, result.agent.id, config=config)
        assert not pipeline_mod.has_active_pipeline(workflow_repo, rel, config)

    def test_agent_id_falls_back_to_branch(self):
        assert pipeline_mod.agent_id_for(Task(id="", title="t", branch="feature/a/b")) == "feature-a-b"


class TestPlan:
    def test_plan_creates_task_and_launches(self, workflow_repo, config):
        result = pipeline_mod.plan_pipeline(
            workflow_repo, "Users can log in with GitHub", "github-login", "frontend", config
        )

        task_path = workflow_repo / result.task_dir
        task = tasks_mod.read_task(task_path)
        assert task.id == "github-login"
        assert task.dev_type == "frontend"
        assert task.extra["description"] == "Users can log in with GitHub"
        assert result.log_file == str(task_path / ".plan-log")
        assert _wait_for_log(result.log_file, "plan task: github-login")
        assert "--agent plan" in Path(result.log_file).read_text()

    def test_plan_invalid_dev_type(self, workflow_repo, config):
        with pytest.raises(PreconditionError):
            pipeline_mod.plan_pipeline(workflow_repo, "req", "name", "docs", config)
        assert tasks_mod.list_tasks(workflow_repo) == []

    def test_plan_unsupported_platform(self, workflow_repo, fake_agent):
        config = Config(agent_binary=str(fake_agent), platform="codex")
        with pytest.raises(UnsupportedPlatformError):
            pipeline_mod.plan_pipeline(workflow_repo, "req", "name", "backend", config)
