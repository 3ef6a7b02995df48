"""Commit a task's work, push its branch and open (or reuse) a pull request."""

import logging
from pathlib import Path

from work_pipeline.config import Config, get_config
from work_pipeline.core import pipeline
from work_pipeline.core import registry as registry_mod
from work_pipeline.core import tasks as tasks_mod
from work_pipeline.core.errors import BranchNotSetError, PipelineError, TaskNotFoundError
from work_pipeline.core.launcher import PIPELINE_FILES
from work_pipeline.core.paths import (
    CURRENT_TASK_FILE,
    DEVELOPER_FILE,
    WORKFLOW_DIR,
    WORKSPACE_DIR,
    get_current_task,
    get_developer,
    get_registry_path,
    resolve_task_dir,
)
from work_pipeline.integrations import git
from work_pipeline.integrations import github
from work_pipeline.store.models import PrResult, Task

logger = logging.getLogger(__name__)

DRY_RUN_URL = "https://github.com/example/repo/pull/DRY-RUN"

COMMIT_PREFIXES = {"docs": "docs", "test": "test"}
DEFAULT_SCOPE = "core"

# Never part of the commit: per-operator state and launcher files
EXCLUDED_PATHS = [
    f"{WORKFLOW_DIR}/{WORKSPACE_DIR}",
    f"{WORKFLOW_DIR}/{CURRENT_TASK_FILE}",
    f"{WORKFLOW_DIR}/{DEVELOPER_FILE}",
    *PIPELINE_FILES,
]


def commit_message(task: Task) -> str:
    prefix = COMMIT_PREFIXES.get(task.dev_type or "", "feat")
    scope = task.extra.get("scope") or DEFAULT_SCOPE
    return f"{prefix}({scope}): {task.title}"


def pr_body(task_path: Path, task: Task) -> str:
    prd = task_path / pipeline.PLAN_FILE
    if prd.exists():
        return prd.read_text(encoding="utf-8")
    return task.extra.get("description") or task.title


def _resolve_work_dir(repo: Path, target: str | None, config: Config) -> tuple[Path, str]:
    """(work dir, task dir) for an agent id, a task reference, or the current task."""
    if target:
        developer = config.developer or get_developer(repo)
        if developer:
            agent = registry_mod.search_agent(get_registry_path(repo, developer), target)
            if agent:
                return Path(agent.worktree_path), agent.task_dir

        task_path, rel = resolve_task_dir(target, repo)
        task = tasks_mod.read_task(task_path)
        if not task:
            found = tasks_mod.find_task(repo, target)
            if not found:
                raise TaskNotFoundError(target)
            task, found_path = found
            _, rel = resolve_task_dir(found_path, repo)
        if task.worktree_path and Path(task.worktree_path).is_dir():
            return Path(task.worktree_path), rel
        return repo, rel

    current = get_current_task(repo)
    if not current:
        raise PipelineError(
            "No task given and no current task set",
            hint="Pass an agent id or task directory.",
        )
    return repo, current


def create_pr(
    repo_root: str | Path,
    target: str | None = None,
    draft: bool = True,
    dry_run: bool = False,
    config: Config | None = None,
) -> PrResult:
    """Stage, commit and push the task's changes, then open a PR and complete the task.

    A dry run stages to report what would be committed, then unstages
    everything and returns a placeholder URL.
    """
    config = config or get_config()
    repo = Path(repo_root)
    work_dir, task_dir = _resolve_work_dir(repo, target, config)

    task_path = work_dir / task_dir
    task = tasks_mod.read_task(task_path)
    if not task:
        task_path = repo / task_dir
        task = tasks_mod.read_task(task_path)
    if not task:
        raise TaskNotFoundError(task_dir)

    branch = task.branch or git.get_current_branch(work_dir)
    if not branch:
        raise BranchNotSetError(task_dir)
    base_branch = task.base_branch or "main"

    git.add_all(work_dir)
    git.unstage(work_dir, EXCLUDED_PATHS)
    staged = git.staged_files(work_dir)
    message = commit_message(task)

    if dry_run:
        logger.info("Dry run: would commit %d file(s) as %r", len(staged), message)
        git.unstage(work_dir)
        return PrResult(
            pr_url=DRY_RUN_URL,
            branch=branch,
            base_branch=base_branch,
            dry_run=True,
        )

    committed = False
    if staged:
        git.commit(work_dir, message)
        committed = True
        logger.info("Committed %d file(s): %s", len(staged), message)

    pushed = False
    ahead = git.unpushed_count(work_dir, branch)
    if ahead is None or ahead > 0:
        git.push(work_dir, branch)
        pushed = True

    pr_url = github.find_open_pr(work_dir, branch)
    if pr_url:
        logger.info("PR already exists: %s", pr_url)
    else:
        pr_url = github.create_pr(
            work_dir,
            base=base_branch,
            head=branch,
            title=message,
            body=pr_body(task_path, task),
            draft=draft,
        )
        logger.info("Created PR: %s", pr_url)

    pipeline.complete_task(repo, task_dir, pr_url, worktree_path=work_dir)

    return PrResult(
        pr_url=pr_url,
        branch=branch,
        base_branch=base_branch,
        committed=committed,
        pushed=pushed,
    )
