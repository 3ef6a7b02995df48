"""Task store: one task.json per task directory."""

import logging
import shutil
from dataclasses import fields
from datetime import date, datetime
from pathlib import Path

from work_pipeline.core import phases
from work_pipeline.core.errors import ArchiveExistsError
from work_pipeline.core.paths import (
    ARCHIVE_DIR,
    TASK_JSON,
    WORKFLOW_DIR,
    TASKS_DIR,
    clear_current_task,
    get_archive_dir,
    get_current_task,
    get_tasks_dir,
    slugify,
)
from work_pipeline.store.jsonfile import read_json, write_json
from work_pipeline.store.models import (
    DEFAULT_PHASES,
    PHASE_ACTIONS,
    TASK_STATUSES,
    PhaseAction,
    Task,
)

logger = logging.getLogger(__name__)

_MODELED = {f.name for f in fields(Task)} - {"extra"}


class InvalidTaskError(ValueError):
    """Raised internally when a task.json document fails validation."""


def _dict_to_task(data: dict) -> Task:
    for key in ("id", "title"):
        if not isinstance(data.get(key), str):
            raise InvalidTaskError(f"'{key}' must be a string")
    status = data.get("status")
    if status not in TASK_STATUSES:
        raise InvalidTaskError(f"invalid status: {status!r}")

    current = data.get("current_phase", 0)
    if not isinstance(current, int) or isinstance(current, bool) or current < 0:
        raise InvalidTaskError(f"invalid current_phase: {current!r}")

    raw_actions = data.get("next_action", [])
    if not isinstance(raw_actions, list):
        raise InvalidTaskError("next_action must be a list")
    actions = []
    last = 0
    for item in raw_actions:
        if not isinstance(item, dict):
            raise InvalidTaskError("next_action entries must be objects")
        phase, action = item.get("phase"), item.get("action")
        if not isinstance(phase, int) or isinstance(phase, bool) or phase <= last:
            raise InvalidTaskError(f"phase numbers must increase: {phase!r}")
        if action not in PHASE_ACTIONS:
            raise InvalidTaskError(f"invalid action: {action!r}")
        actions.append(PhaseAction(phase, action))
        last = phase

    if current != 0 and current not in {a.phase for a in actions}:
        raise InvalidTaskError(f"current_phase {current} is not a declared phase")

    def _opt_str(key: str) -> str | None:
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            raise InvalidTaskError(f"'{key}' must be a string or null")
        return value

    return Task(
        id=data["id"],
        title=data["title"],
        status=status,
        branch=_opt_str("branch"),
        base_branch=_opt_str("base_branch"),
        worktree_path=_opt_str("worktree_path"),
        current_phase=current,
        next_action=actions,
        pr_url=_opt_str("pr_url"),
        dev_type=_opt_str("dev_type"),
        extra={k: v for k, v in data.items() if k not in _MODELED},
    )


def read_task(task_dir: str | Path) -> Task | None:
    """Read task.json from a task directory. Missing or invalid documents return None."""
    path = Path(task_dir) / TASK_JSON
    data = read_json(path)
    if data is None:
        return None
    try:
        return _dict_to_task(data)
    except InvalidTaskError as e:
        logger.warning("Ignoring invalid task document %s: %s", path, e)
        return None


def write_task(task_dir: str | Path, task: Task) -> None:
    write_json(Path(task_dir) / TASK_JSON, task.to_dict())


def update_task(task_dir: str | Path, **updates) -> Task | None:
    """Merge updates into the task document. Returns None if there is no valid task."""
    task = read_task(task_dir)
    if not task:
        return None
    for key, value in updates.items():
        if key in _MODELED:
            setattr(task, key, value)
        else:
            task.extra[key] = value
    write_task(task_dir, task)
    return task


def set_phase(task_dir: str | Path, phase: int) -> Task | None:
    task = read_task(task_dir)
    if not task:
        return None
    if phase != 0 and phases.action_for_phase(task, phase) is None:
        raise ValueError(f"Phase {phase} is not declared for task {task.id}")
    task.current_phase = phase
    write_task(task_dir, task)
    return task


def advance_phase(task_dir: str | Path) -> int | None:
    """Advance the stored phase. Returns the new phase, or None if there is no task."""
    task = read_task(task_dir)
    if not task:
        return None
    before = task.current_phase
    after = phases.advance(task)
    if after != before:
        write_task(task_dir, task)
    return after


# ── Task directories ──────────────────────────────────────────────────────────


def create_task(
    repo_root: str | Path,
    title: str,
    slug: str | None = None,
    description: str = "",
    dev_type: str | None = None,
    assignee: str | None = None,
) -> str:
    """Create a task directory with a fresh task.json. Returns the relative path."""
    slug = slug or slugify(title)
    if not slug:
        raise ValueError(f"Could not generate a slug from title: {title!r}")

    dir_name = f"{date.today():%m-%d}-{slug}"
    task_dir = get_tasks_dir(repo_root) / dir_name
    if task_dir.exists():
        logger.warning("Task directory already exists: %s", dir_name)
    task_dir.mkdir(parents=True, exist_ok=True)
    get_archive_dir(repo_root).mkdir(parents=True, exist_ok=True)

    task = Task(
        id=slug,
        title=title,
        status="planning",
        next_action=list(DEFAULT_PHASES),
        dev_type=dev_type,
        extra={
            "name": slug,
            "description": description,
            "assignee": assignee,
            "createdAt": date.today().isoformat(),
            "completedAt": None,
        },
    )
    write_task(task_dir, task)
    return f"{WORKFLOW_DIR}/{TASKS_DIR}/{dir_name}"


def _active_task_dirs(repo_root: str | Path) -> list[Path]:
    tasks_dir = get_tasks_dir(repo_root)
    if not tasks_dir.is_dir():
        return []
    return sorted(
        p for p in tasks_dir.iterdir() if p.is_dir() and p.name != ARCHIVE_DIR
    )


def find_task(repo_root: str | Path, name: str) -> tuple[Task, Path] | None:
    """Find an active task by directory name, ``-<slug>`` suffix, id or name."""
    for path in _active_task_dirs(repo_root):
        task = read_task(path)
        if not task:
            continue
        if (
            path.name == name
            or path.name.endswith(f"-{name}")
            or task.id == name
            or task.extra.get("name") == name
        ):
            return task, path
    return None


def list_tasks(repo_root: str | Path, status: str | None = None) -> list[tuple[Task, Path]]:
    """List active (non-archived) tasks, optionally filtered by status."""
    result = []
    for path in _active_task_dirs(repo_root):
        task = read_task(path)
        if task and (status is None or task.status == status):
            result.append((task, path))
    return result


def archive_task(repo_root: str | Path, name: str) -> str | None:
    """Move a task under archive/<YYYY-MM>/. Returns the new relative path, or None.

    Raises ArchiveExistsError, leaving the task untouched, when that month
    already holds a directory of the same name.
    """
    found = find_task(repo_root, name)
    if not found:
        return None
    task, task_dir = found

    year_month = f"{datetime.now():%Y-%m}"
    month_dir = get_archive_dir(repo_root) / year_month
    target = month_dir / task_dir.name
    if target.exists():
        raise ArchiveExistsError(str(target))

    updates = {"completedAt": date.today().isoformat()}
    if task.status != "rejected":
        updates["status"] = "completed"
    update_task(task_dir, **updates)

    current = get_current_task(repo_root)
    if current and Path(current).name == task_dir.name:
        clear_current_task(repo_root)

    month_dir.mkdir(parents=True, exist_ok=True)
    shutil.move(str(task_dir), str(target))
    logger.info("Archived task %s to %s", task.id, month_dir)

    return f"{WORKFLOW_DIR}/{TASKS_DIR}/{ARCHIVE_DIR}/{year_month}/{task_dir.name}"


def list_archived_tasks(repo_root: str | Path, month: str | None = None) -> list[dict]:
    archive = get_archive_dir(repo_root)
    if not archive.is_dir():
        return []
    months = [archive / month] if month else sorted(p for p in archive.iterdir() if p.is_dir())
    result = []
    for month_dir in months:
        if not month_dir.is_dir():
            continue
        for path in sorted(p for p in month_dir.iterdir() if p.is_dir()):
            result.append({"month": month_dir.name, "dir_name": path.name})
    return result
