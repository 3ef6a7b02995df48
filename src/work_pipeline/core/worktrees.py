"""Git worktree lifecycle for pipeline tasks.

A task's worktree lives at ``<worktree_dir>/<branch>``. Creation copies the
configured auxiliary files and the task directory in, then runs the
post-create commands. A failed setup command leaves the worktree in place so
it can be inspected and reused on retry.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from work_pipeline.config import WorktreeConfig, get_worktree_base_dir, load_worktree_config
from work_pipeline.core import tasks as tasks_mod
from work_pipeline.core.errors import DirtyWorktreeError, SetupFailedError, WorktreeExistsError
from work_pipeline.core.launcher import PIPELINE_FILES
from work_pipeline.core.paths import (
    CURRENT_TASK_FILE,
    WORKFLOW_DIR,
    set_current_task_in_dir,
)
from work_pipeline.integrations.git import (
    GitError,
    branch_exists,
    find_worktree_for_branch,
    get_current_branch,
    get_status,
    worktree_add,
    worktree_list,
    worktree_prune,
    worktree_remove,
)
from work_pipeline.store.models import Task, WorktreeResult

logger = logging.getLogger(__name__)

# Files the pipeline itself writes into a worktree; never count as user changes.
OWNED_PATHS = (*PIPELINE_FILES, f"{WORKFLOW_DIR}/{CURRENT_TASK_FILE}")


@dataclass
class VerifyResult:
    command: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def create_worktree(
    branch: str,
    base_branch: str | None,
    repo_root: str | Path,
    task_dir: str | None = None,
    config: WorktreeConfig | None = None,
) -> WorktreeResult:
    """Create (or return the existing) worktree for branch."""
    repo = Path(repo_root)
    config = config or load_worktree_config(repo)
    base_branch = base_branch or get_current_branch(repo) or "main"

    existing = find_worktree_for_branch(repo, branch)
    if existing:
        logger.info("Worktree already exists for %s: %s", branch, existing.path)
        return WorktreeResult(
            path=existing.path,
            branch=branch,
            base_branch=base_branch,
            already_existed=True,
        )

    wt_path = get_worktree_base_dir(repo, config) / branch
    if wt_path.exists():
        raise WorktreeExistsError(str(wt_path), branch)
    wt_path.parent.mkdir(parents=True, exist_ok=True)

    # Drop registrations whose directories were deleted by hand
    worktree_prune(repo)
    start_point = None if branch_exists(repo, branch) else base_branch
    worktree_add(repo, wt_path, branch, start_point)
    logger.info("Created worktree %s on %s (from %s)", wt_path, branch, base_branch)

    files_copied = copy_files(repo, wt_path, config.copy)

    if task_dir:
        if copy_task_dir(repo, wt_path, task_dir):
            files_copied += 1
        set_current_task_in_dir(wt_path, task_dir)

    hooks_run = run_post_create(wt_path, config.post_create)

    return WorktreeResult(
        path=str(wt_path),
        branch=branch,
        base_branch=base_branch,
        files_copied=files_copied,
        hooks_run=hooks_run,
    )


def copy_files(repo_root: Path, wt_path: Path, paths: list[str]) -> int:
    """Copy configured auxiliary files (e.g. .env) from the main repo. Missing ones are skipped."""
    copied = 0
    for rel in paths:
        src = repo_root / rel
        dest = wt_path / rel
        if not src.exists():
            logger.debug("Skipping missing copy entry: %s", rel)
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        if src.is_dir():
            shutil.copytree(src, dest, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dest)
        copied += 1
    return copied


def copy_task_dir(repo_root: Path, wt_path: Path, task_dir: str) -> bool:
    src = repo_root / task_dir
    if not src.is_dir():
        return False
    shutil.copytree(src, wt_path / task_dir, dirs_exist_ok=True)
    return True


def run_post_create(wt_path: Path, commands: list[str]) -> int:
    """Run setup commands in order, stopping at the first failure."""
    for command in commands:
        logger.info("Running post-create command: %s", command)
        result = subprocess.run(command, shell=True, cwd=wt_path)
        if result.returncode != 0:
            raise SetupFailedError(str(wt_path), command, result.returncode)
    return len(commands)


def verify_worktree(path: str | Path, config: WorktreeConfig) -> list[VerifyResult]:
    """Run every verify command and report exit codes."""
    results = []
    for command in config.verify:
        proc = subprocess.run(command, shell=True, cwd=path, capture_output=True, text=True)
        results.append(VerifyResult(command=command, returncode=proc.returncode))
    return results


def locate_worktree(
    task: Task,
    repo_root: str | Path,
    config: WorktreeConfig | None = None,
) -> Path | None:
    """Find an existing worktree for a task: worktree_path first, then <worktree_dir>/<branch>."""
    if task.worktree_path and Path(task.worktree_path).is_dir():
        return Path(task.worktree_path)
    if task.branch:
        candidate = get_worktree_base_dir(repo_root, config) / task.branch
        if candidate.is_dir():
            return candidate
    return None


def uncommitted_changes(path: str | Path, ignore: tuple[str, ...] = ()) -> list[str]:
    """Porcelain status lines, excluding pipeline-owned files and ignored prefixes."""
    skip = tuple(p.rstrip("/") for p in (*OWNED_PATHS, *ignore))
    changes = []
    for line in get_status(path):
        rel = line[3:].split(" -> ")[-1].strip('"')
        if any(rel == p or rel.startswith(p + "/") for p in skip):
            continue
        changes.append(line)
    return changes


def remove_worktree(
    path: str | Path,
    repo_root: str | Path,
    force: bool = False,
    ignore: tuple[str, ...] = (),
) -> bool:
    """Remove a worktree registration and its directory.

    Without force, refuses with DirtyWorktreeError if anything besides
    pipeline-owned files changed. Returns False if the directory was already gone.
    """
    wt_path = Path(path)
    if not wt_path.exists():
        logger.debug("Worktree directory does not exist: %s", wt_path)
        return False

    if not force:
        changes = uncommitted_changes(wt_path, ignore)
        if changes:
            raise DirtyWorktreeError(str(wt_path), changes)

    # Pipeline-owned untracked files would make a plain remove fail
    try:
        worktree_remove(repo_root, wt_path, force=True)
    except GitError:
        if wt_path.exists():
            shutil.rmtree(wt_path)
        worktree_prune(repo_root)
    logger.info("Removed worktree %s", wt_path)
    return True


def prepare_worktree(wt_path: str | Path, task_dir: str, repo_root: str | Path) -> None:
    """Bring a reused worktree up to date for task_dir.

    Copies the task directory in if it is missing, writes the worktree's
    current-task pointer and records worktree_path in both task copies.
    A base_branch that is already set is left alone.
    """
    wt_path = Path(wt_path)
    repo = Path(repo_root)
    main_task_dir = repo / task_dir
    wt_task_dir = wt_path / task_dir

    if not wt_task_dir.exists() and main_task_dir.is_dir():
        copy_task_dir(repo, wt_path, task_dir)

    set_current_task_in_dir(wt_path, task_dir)

    existing = tasks_mod.read_task(main_task_dir)
    updates: dict = {"worktree_path": str(wt_path)}
    if not (existing and existing.base_branch):
        updates["base_branch"] = get_current_branch(repo) or "main"

    if wt_task_dir.exists():
        tasks_mod.update_task(wt_task_dir, **updates)
    tasks_mod.update_task(main_task_dir, **updates)


def list_worktrees(repo_root: str | Path) -> list[dict]:
    return [
        {"path": wt.path, "branch": wt.branch, "head": wt.head}
        for wt in worktree_list(repo_root)
        if not wt.is_bare
    ]
