"""Filesystem layout of the workflow directory and the current-task pointers."""

import os
import re
from pathlib import Path

from work_pipeline.core.errors import PipelineError

WORKFLOW_DIR = ".workflow"
TASKS_DIR = "tasks"
ARCHIVE_DIR = "archive"
WORKSPACE_DIR = "workspace"
AGENTS_DIR = ".agents"
REGISTRY_FILE = "registry.json"
CURRENT_TASK_FILE = ".current-task"
DEVELOPER_FILE = ".developer"
TASK_JSON = "task.json"


def get_repo_root(start_dir: str | Path | None = None) -> Path:
    """Walk up from start_dir until a directory containing .workflow/ is found."""
    start = Path(start_dir or os.getcwd()).resolve()
    current = start
    while current != current.parent:
        if (current / WORKFLOW_DIR).is_dir():
            return current
        current = current.parent
    return start


def get_workflow_dir(repo_root: str | Path) -> Path:
    return Path(repo_root) / WORKFLOW_DIR


def get_tasks_dir(repo_root: str | Path) -> Path:
    return get_workflow_dir(repo_root) / TASKS_DIR


def get_archive_dir(repo_root: str | Path) -> Path:
    return get_tasks_dir(repo_root) / ARCHIVE_DIR


def is_initialized(repo_root: str | Path) -> bool:
    return get_workflow_dir(repo_root).is_dir()


def resolve_task_dir(task_dir: str | Path, repo_root: str | Path) -> tuple[Path, str]:
    """Return (absolute path, path relative to repo root) for a task directory."""
    root = Path(repo_root)
    path = Path(task_dir)
    if path.is_absolute():
        return path, os.path.relpath(path, root)
    return root / path, path.as_posix()


def slugify(title: str) -> str:
    """Convert a title to an ASCII slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower())
    return slug.strip("-")


# ── Developer / per-operator workspace ────────────────────────────────────────


def get_developer(repo_root: str | Path) -> str | None:
    """Read the developer name from .workflow/.developer (``name=<dev>`` line)."""
    path = get_workflow_dir(repo_root) / DEVELOPER_FILE
    if not path.exists():
        return None
    match = re.search(r"^name=(.+)$", path.read_text(encoding="utf-8"), re.MULTILINE)
    return match.group(1).strip() if match else None


def require_developer(repo_root: str | Path, override: str | None = None) -> str:
    developer = override or get_developer(repo_root)
    if not developer:
        raise PipelineError(
            "No developer set",
            hint=f"Write 'name=<you>' to {WORKFLOW_DIR}/{DEVELOPER_FILE} or set WP_DEVELOPER.",
        )
    return developer


def get_registry_path(repo_root: str | Path, developer: str) -> Path:
    """Per-operator registry: .workflow/workspace/<developer>/.agents/registry.json."""
    return get_workflow_dir(repo_root) / WORKSPACE_DIR / developer / AGENTS_DIR / REGISTRY_FILE


# ── Current task pointer ──────────────────────────────────────────────────────


def get_current_task_in_dir(target_dir: str | Path) -> str | None:
    path = Path(target_dir) / WORKFLOW_DIR / CURRENT_TASK_FILE
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8").strip() or None


def set_current_task_in_dir(target_dir: str | Path, task_dir: str) -> None:
    """Write the current-task pointer inside target_dir (usually a worktree)."""
    workflow = Path(target_dir) / WORKFLOW_DIR
    workflow.mkdir(parents=True, exist_ok=True)
    (workflow / CURRENT_TASK_FILE).write_text(task_dir, encoding="utf-8")


def clear_current_task_in_dir(target_dir: str | Path) -> None:
    (Path(target_dir) / WORKFLOW_DIR / CURRENT_TASK_FILE).unlink(missing_ok=True)


def get_current_task(repo_root: str | Path) -> str | None:
    return get_current_task_in_dir(repo_root)


def set_current_task(repo_root: str | Path, task_dir: str) -> None:
    if not (Path(repo_root) / task_dir).is_dir():
        raise PipelineError(f"Task directory not found: {task_dir}")
    set_current_task_in_dir(repo_root, task_dir)


def clear_current_task(repo_root: str | Path) -> None:
    clear_current_task_in_dir(repo_root)
