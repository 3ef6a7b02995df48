"""Tests for the task store."""

import json
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from work_pipeline.core import tasks as tasks_mod
from work_pipeline.core.errors import ArchiveExistsError
from work_pipeline.core.paths import (
    get_current_task,
    get_current_task_in_dir,
    set_current_task,
    set_current_task_in_dir,
    slugify,
)


@pytest.fixture
def repo():
    with tempfile.TemporaryDirectory() as tmp:
        (Path(tmp) / ".workflow").mkdir()
        yield Path(tmp)


def _write_raw(task_dir: Path, data: dict) -> None:
    task_dir.mkdir(parents=True, exist_ok=True)
    (task_dir / "task.json").write_text(json.dumps(data))


VALID = {
    "id": "login",
    "title": "Add login",
    "status": "planning",
    "branch": "feature/login",
    "current_phase": 0,
    "next_action": [
        {"phase": 1, "action": "implement"},
        {"phase": 2, "action": "check"},
    ],
}


class TestSlugify:
    def test_basic(self):
        assert slugify("Add User Login!") == "add-user-login"

    def test_strips_dashes(self):
        assert slugify("  --Fix: crash--  ") == "fix-crash"


class TestCreateTask:
    def test_create_task(self, repo):
        rel = tasks_mod.create_task(repo, "Add login", description="OAuth flow", dev_type="backend")
        assert rel.startswith(".workflow/tasks/")
        assert rel.endswith("-add-login")

        task = tasks_mod.read_task(repo / rel)
        assert task.id == "add-login"
        assert task.title == "Add login"
        assert task.status == "planning"
        assert task.current_phase == 0
        assert [a.action for a in task.next_action] == ["implement", "check", "finish", "create-pr"]
        assert task.dev_type == "backend"
        assert task.extra["description"] == "OAuth flow"

    def test_create_with_explicit_slug(self, repo):
        rel = tasks_mod.create_task(repo, "Something long", slug="short")
        assert rel.endswith("-short")

    def test_empty_slug_fails(self, repo):
        with pytest.raises(ValueError):
            tasks_mod.create_task(repo, "!!!")


class TestReadWrite:
    def test_read_missing(self, repo):
        assert tasks_mod.read_task(repo / "nope") is None

    def test_read_corrupt(self, repo):
        task_dir = repo / "broken"
        task_dir.mkdir()
        (task_dir / "task.json").write_text("{not json")
        assert tasks_mod.read_task(task_dir) is None

    @pytest.mark.parametrize(
        "override",
        [
            {"status": "bogus"},
            {"title": 42},
            {"current_phase": -1},
            {"current_phase": 3},
            {"next_action": [{"phase": 2, "action": "check"}, {"phase": 1, "action": "implement"}]},
            {"next_action": [{"phase": 1, "action": "deploy"}]},
            {"next_action": "implement"},
        ],
    )
    def test_invalid_documents_read_as_not_found(self, repo, override):
        task_dir = repo / "t"
        _write_raw(task_dir, {**VALID, **override})
        assert tasks_mod.read_task(task_dir) is None

    def test_gapped_phases_are_valid(self, repo):
        task_dir = repo / "t"
        _write_raw(task_dir, {
            **VALID,
            "current_phase": 3,
            "next_action": [{"phase": 1, "action": "implement"}, {"phase": 3, "action": "finish"}],
        })
        assert tasks_mod.read_task(task_dir).current_phase == 3

    def test_update_preserves_unknown_keys(self, repo):
        task_dir = repo / "t"
        _write_raw(task_dir, {**VALID, "priority": "P1", "notes": "keep me"})

        task = tasks_mod.update_task(task_dir, status="in_progress", scope="auth")
        assert task.status == "in_progress"

        raw = json.loads((task_dir / "task.json").read_text())
        assert raw["priority"] == "P1"
        assert raw["notes"] == "keep me"
        assert raw["scope"] == "auth"
        assert raw["branch"] == "feature/login"

    def test_update_missing(self, repo):
        assert tasks_mod.update_task(repo / "nope", status="completed") is None

    def test_write_leaves_no_temp_files(self, repo):
        task_dir = repo / "t"
        _write_raw(task_dir, VALID)
        tasks_mod.update_task(task_dir, status="in_progress")
        assert sorted(p.name for p in task_dir.iterdir()) == ["task.json"]


class TestPhasePersistence:
    def test_set_phase(self, repo):
        task_dir = repo / "t"
        _write_raw(task_dir, VALID)
        assert tasks_mod.set_phase(task_dir, 2).current_phase == 2
        assert tasks_mod.read_task(task_dir).current_phase == 2

    def test_set_undeclared_phase_fails(self, repo):
        task_dir = repo / "t"
        _write_raw(task_dir, VALID)
        with pytest.raises(ValueError):
            tasks_mod.set_phase(task_dir, 7)

    def test_advance_phase_stops_at_last(self, repo):
        task_dir = repo / "t"
        _write_raw(task_dir, VALID)
        assert tasks_mod.advance_phase(task_dir) == 1
        assert tasks_mod.advance_phase(task_dir) == 2
        assert tasks_mod.advance_phase(task_dir) == 2
        assert tasks_mod.read_task(task_dir).current_phase == 2

    def test_advance_missing(self, repo):
        assert tasks_mod.advance_phase(repo / "nope") is None


class TestFindAndList:
    def test_find_by_slug(self, repo):
        rel = tasks_mod.create_task(repo, "Add login")
        task, path = tasks_mod.find_task(repo, "add-login")
        assert task.id == "add-login"
        assert path == repo / rel

    def test_find_by_dir_name(self, repo):
        rel = tasks_mod.create_task(repo, "Add login")
        found = tasks_mod.find_task(repo, Path(rel).name)
        assert found is not None

    def test_find_missing(self, repo):
        assert tasks_mod.find_task(repo, "ghost") is None

    def test_list_with_status_filter(self, repo):
        rel = tasks_mod.create_task(repo, "First")
        tasks_mod.create_task(repo, "Second")
        tasks_mod.update_task(repo / rel, status="in_progress")

        assert len(tasks_mod.list_tasks(repo)) == 2
        in_progress = tasks_mod.list_tasks(repo, status="in_progress")
        assert [t.id for t, _ in in_progress] == ["first"]


class TestArchive:
    def test_archive_task(self, repo):
        rel = tasks_mod.create_task(repo, "Ship it")
        set_current_task(repo, rel)

        archived = tasks_mod.archive_task(repo, "ship-it")

        month = f"{datetime.now():%Y-%m}"
        assert archived == f".workflow/tasks/archive/{month}/{Path(rel).name}"
        assert not (repo / rel).exists()
        task = tasks_mod.read_task(repo / archived)
        assert task.status == "completed"
        assert task.extra["completedAt"]
        assert get_current_task(repo) is None

    def test_archive_keeps_rejected_status(self, repo):
        rel = tasks_mod.create_task(repo, "Bad idea")
        tasks_mod.update_task(repo / rel, status="rejected")
        archived = tasks_mod.archive_task(repo, "bad-idea")
        assert tasks_mod.read_task(repo / archived).status == "rejected"

    def test_archived_tasks_are_not_listed(self, repo):
        tasks_mod.create_task(repo, "Old")
        tasks_mod.archive_task(repo, "old")
        assert tasks_mod.list_tasks(repo) == []
        assert tasks_mod.find_task(repo, "old") is None
        assert len(tasks_mod.list_archived_tasks(repo)) == 1

    def test_archive_missing(self, repo):
        assert tasks_mod.archive_task(repo, "ghost") is None

    def test_archive_same_name_twice_refused(self, repo):
        tasks_mod.create_task(repo, "Dup")
        first = tasks_mod.archive_task(repo, "dup")
        rel = tasks_mod.create_task(repo, "Dup")
        tasks_mod.update_task(repo / rel, notes="second")

        with pytest.raises(ArchiveExistsError):
            tasks_mod.archive_task(repo, "dup")

        # Both copies stay where they were
        assert tasks_mod.read_task(repo / rel).status == "planning"
        assert not (repo / first / Path(rel).name).exists()
        assert "notes" not in tasks_mod.read_task(repo / first).extra


class TestCurrentTaskPointer:
    def test_pointer_in_other_dir(self, repo):
        other = repo / "wt"
        set_current_task_in_dir(other, ".workflow/tasks/01-01-x")
        assert get_current_task_in_dir(other) == ".workflow/tasks/01-01-x"
        assert get_current_task(repo) is None

    def test_set_current_task_requires_dir(self, repo):
        from work_pipeline.core.errors import PipelineError

        with pytest.raises(PipelineError):
            set_current_task(repo, ".workflow/tasks/missing")
