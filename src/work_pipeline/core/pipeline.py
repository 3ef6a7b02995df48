"""Pipeline orchestration: start, stop, cleanup and status of task agents.

This is the only module that writes to both the Registry and Task documents.
Task updates are dual-written: the worktree copy first (it is the one the
agent reads and the one status reports from), then the main-repo copy.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from work_pipeline.config import Config, get_config, load_worktree_config
from work_pipeline.core import phases
from work_pipeline.core import registry as registry_mod
from work_pipeline.core import tasks as tasks_mod
from work_pipeline.core import worktrees as worktrees_mod
from work_pipeline.core.errors import (
    AgentAlreadyRunningError,
    AgentNotFoundError,
    BranchNotSetError,
    DirtyWorktreeError,
    MissingPlanError,
    PreconditionError,
    TaskNotFoundError,
    TaskRejectedError,
    UnsupportedPlatformError,
)
from work_pipeline.core.launcher import LOG_FILE, is_alive, stop, tail_log
from work_pipeline.core.paths import (
    get_registry_path,
    require_developer,
    resolve_task_dir,
    slugify,
)
from work_pipeline.core.platforms import PlatformAdapter, get_platform_adapter
from work_pipeline.integrations.git import GitError
from work_pipeline.store.models import (
    PLAN_DEV_TYPES,
    Agent,
    CleanupResult,
    PipelineStatus,
    PlanResult,
    StartResult,
    Task,
    TaskSummary,
)

logger = logging.getLogger(__name__)

PLAN_FILE = "prd.md"
REJECTED_FILE = "REJECTED.md"
PLAN_LOG_FILE = ".plan-log"

DISPATCH_AGENT = "dispatch"
PLAN_AGENT = "plan"


def _registry_path(repo_root: Path, config: Config) -> Path:
    return get_registry_path(repo_root, require_developer(repo_root, config.developer))


def agent_id_for(task: Task) -> str:
    if task.id:
        return task.id
    return (task.branch or "").replace("/", "-")


def _require_multi_agent(repo_root: Path, config: Config) -> PlatformAdapter:
    adapter = get_platform_adapter(repo_root, config)
    if not adapter.supports_multi_agent():
        raise UnsupportedPlatformError(
            f"Platform '{adapter.platform}' does not support the multi-agent pipeline"
        )
    return adapter


def _dual_write(
    repo_root: Path,
    task_dir: str,
    wt_root: str | Path | None,
    **updates,
) -> Task | None:
    """Apply updates to the worktree copy (if any), then the main-repo copy."""
    wt_task = None
    if wt_root:
        wt_task_dir = Path(wt_root) / task_dir
        if wt_task_dir.resolve() != (repo_root / task_dir).resolve():
            wt_task = tasks_mod.update_task(wt_task_dir, **updates)
    main_task = tasks_mod.update_task(repo_root / task_dir, **updates)
    return wt_task or main_task


def _read_task_copy(repo_root: Path, task_dir: str, worktree_path: str | Path | None) -> Task | None:
    """Task from the worktree copy, falling back to the main-repo copy."""
    if worktree_path:
        task = tasks_mod.read_task(Path(worktree_path) / task_dir)
        if task:
            return task
    return tasks_mod.read_task(repo_root / task_dir)


# ── Start ─────────────────────────────────────────────────────────────────────


def _check_preconditions(task_path: Path, task_dir: str) -> Task:
    task = tasks_mod.read_task(task_path)
    if not task:
        raise TaskNotFoundError(task_dir)

    rejected = task_path / REJECTED_FILE
    if task.status == "rejected" or rejected.exists():
        reason = rejected.read_text(encoding="utf-8") if rejected.exists() else ""
        raise TaskRejectedError(task_dir, reason)

    if not (task_path / PLAN_FILE).exists():
        raise MissingPlanError(task_dir)

    if not task.branch:
        raise BranchNotSetError(task_dir)

    return task


def start_pipeline(
    repo_root: str | Path,
    task_dir: str | Path,
    config: Config | None = None,
    verbose: bool = False,
) -> StartResult:
    """Create or reuse the task's worktree and launch the dispatch agent in it.

    Every precondition is checked before anything is written. A failure after
    the worktree exists leaves it in place so a retry reuses it.
    """
    config = config or get_config()
    repo = Path(repo_root)
    task_path, rel = resolve_task_dir(task_dir, repo)

    task = _check_preconditions(task_path, rel)
    adapter = _require_multi_agent(repo, config)
    registry_path = _registry_path(repo, config)

    agent_id = agent_id_for(task)
    by_task = registry_mod.get_agent_by_task_dir(registry_path, rel)
    for existing in (registry_mod.get_agent(registry_path, agent_id), by_task):
        if existing and is_alive(existing.pid):
            raise AgentAlreadyRunningError(existing.id, existing.pid)

    wt_config = load_worktree_config(repo)
    wt_path = worktrees_mod.locate_worktree(task, repo, wt_config)
    if wt_path:
        logger.info("Reusing worktree %s", wt_path)
        worktrees_mod.prepare_worktree(wt_path, rel, repo)
    else:
        result = worktrees_mod.create_worktree(
            task.branch, task.base_branch, repo, task_dir=rel, config=wt_config
        )
        wt_path = Path(result.path)
        if result.already_existed:
            worktrees_mod.prepare_worktree(wt_path, rel, repo)
        else:
            _dual_write(
                repo,
                rel,
                wt_path,
                worktree_path=str(wt_path),
                base_branch=task.base_branch or result.base_branch,
            )

    # The worktree copy carries the phase the agent reached before a restart
    current = _read_task_copy(repo, rel, wt_path) or task
    _dual_write(repo, rel, wt_path, status="in_progress", current_phase=current.current_phase)

    launched = adapter.launch_agent(DISPATCH_AGENT, wt_path, background=True, verbose=verbose)

    registry_mod.ensure_registry(registry_path)
    if by_task and by_task.id != agent_id:
        registry_mod.remove_agent(registry_path, by_task.id)
    agent = registry_mod.add_agent(
        registry_path,
        Agent(
            id=agent_id,
            worktree_path=str(wt_path),
            pid=launched.pid,
            started_at=datetime.now(timezone.utc).isoformat(),
            task_dir=rel,
            status="running",
            session_id=launched.session_id,
        ),
    )
    logger.info("Pipeline started for %s in %s (PID %s)", agent_id, wt_path, launched.pid)
    return StartResult(agent=agent, worktree_path=str(wt_path), log_file=launched.log_file or "")


# ── Stop / cleanup ────────────────────────────────────────────────────────────


def _find_agent(registry_path: Path, agent_id: str) -> Agent:
    agent = registry_mod.search_agent(registry_path, agent_id)
    if not agent:
        raise AgentNotFoundError(agent_id)
    return agent


def stop_pipeline(
    repo_root: str | Path,
    agent_id: str,
    force: bool = False,
    config: Config | None = None,
) -> Agent:
    """Signal the agent if it is still alive and mark it stopped. The worktree is kept."""
    config = config or get_config()
    registry_path = _registry_path(Path(repo_root), config)
    agent = _find_agent(registry_path, agent_id)

    if is_alive(agent.pid):
        if not stop(agent.pid, force=force, timeout=config.stop_timeout):
            logger.warning("Agent %s (PID %s) did not exit in time", agent.id, agent.pid)
    else:
        logger.info("Agent %s is not running", agent.id)

    return registry_mod.update_agent_status(registry_path, agent.id, "stopped") or agent


def cleanup_pipeline(
    repo_root: str | Path,
    agent_id: str,
    archive: bool = False,
    force: bool = False,
    config: Config | None = None,
) -> CleanupResult:
    """Stop the agent, remove its worktree and registry entry, optionally archive the task.

    Without force, a worktree with uncommitted changes is refused before
    anything is stopped or removed.
    """
    config = config or get_config()
    repo = Path(repo_root)
    registry_path = _registry_path(repo, config)
    agent = _find_agent(registry_path, agent_id)
    wt_path = Path(agent.worktree_path)
    owned = (agent.task_dir,)

    if not force and wt_path.exists():
        changes = worktrees_mod.uncommitted_changes(wt_path, ignore=owned)
        if changes:
            raise DirtyWorktreeError(str(wt_path), changes)

    if is_alive(agent.pid):
        if not stop(agent.pid, force=force, timeout=config.stop_timeout):
            stop(agent.pid, force=True, timeout=config.stop_timeout)

    removed = worktrees_mod.remove_worktree(wt_path, repo, force=True, ignore=owned)
    registry_mod.remove_agent(registry_path, agent.id)

    archived_to = None
    if archive:
        archived_to = tasks_mod.archive_task(repo, Path(agent.task_dir).name)
        if archived_to is None:
            logger.warning("Task %s not found for archiving", agent.task_dir)

    logger.info("Cleaned up pipeline %s", agent.id)
    return CleanupResult(agent_id=agent.id, worktree_removed=removed, archived_to=archived_to)


# ── Status ────────────────────────────────────────────────────────────────────


def format_elapsed(started_at: str, now: datetime | None = None) -> str:
    try:
        start = datetime.fromisoformat(started_at)
    except (TypeError, ValueError):
        return "N/A"
    now = now or (datetime.now(start.tzinfo) if start.tzinfo else datetime.now())
    seconds = max(0, int((now - start).total_seconds()))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _summarize(task: Task | None, agent: Agent) -> TaskSummary:
    if not task:
        return TaskSummary(
            id=agent.id,
            title="",
            status="unknown",
            branch=None,
            current_phase=0,
            phase="N/A",
        )
    return TaskSummary(
        id=task.id,
        title=task.title,
        status=task.status,
        branch=task.branch,
        current_phase=task.current_phase,
        phase=phases.describe(task),
    )


def _build_status(repo: Path, agent: Agent, config: Config) -> PipelineStatus:
    wt_path = Path(agent.worktree_path)
    task = _read_task_copy(repo, agent.task_dir, wt_path)
    running = is_alive(agent.pid)

    modified = 0
    if wt_path.is_dir():
        try:
            modified = len(worktrees_mod.uncommitted_changes(wt_path, ignore=(agent.task_dir,)))
        except GitError as e:
            logger.debug("Could not read git status of %s: %s", wt_path, e)

    resume = None
    if not running:
        try:
            resume = get_platform_adapter(repo, config).resume_command(wt_path, agent.session_id)
        except UnsupportedPlatformError:
            resume = None

    return PipelineStatus(
        agent=agent,
        task=_summarize(task, agent),
        process_running=running,
        last_log_lines=tail_log(wt_path / LOG_FILE, config.log_tail_lines),
        resume_command=resume,
        modified_files=modified,
        elapsed=format_elapsed(agent.started_at),
    )


def get_status(
    repo_root: str | Path,
    agent_id: str,
    config: Config | None = None,
) -> PipelineStatus:
    config = config or get_config()
    repo = Path(repo_root)
    registry_path = _registry_path(repo, config)
    registry_mod.sync_statuses(registry_path)
    return _build_status(repo, _find_agent(registry_path, agent_id), config)


def list_statuses(repo_root: str | Path, config: Config | None = None) -> list[PipelineStatus]:
    config = config or get_config()
    repo = Path(repo_root)
    registry_path = _registry_path(repo, config)
    registry_mod.sync_statuses(registry_path)
    return [_build_status(repo, a, config) for a in registry_mod.list_agents(registry_path)]


# ── Phase / completion ────────────────────────────────────────────────────────


def resolve_target(repo: Path, target: str, config: Config) -> tuple[str, str | None]:
    """Map an agent id or task reference to (task_dir, worktree_path)."""
    agent = registry_mod.search_agent(_registry_path(repo, config), target)
    if agent:
        return agent.task_dir, agent.worktree_path

    task_path, rel = resolve_task_dir(target, repo)
    if not tasks_mod.read_task(task_path):
        found = tasks_mod.find_task(repo, target)
        if not found:
            raise TaskNotFoundError(target)
        task_path, rel = resolve_task_dir(found[1], repo)

    task = tasks_mod.read_task(task_path)
    return rel, task.worktree_path if task else None


def advance_pipeline(
    repo_root: str | Path,
    target: str,
    config: Config | None = None,
) -> int:
    """Advance the task's phase and dual-write it. Returns the (possibly unchanged) phase."""
    config = config or get_config()
    repo = Path(repo_root)
    task_dir, wt_path = resolve_target(repo, target, config)
    task = _read_task_copy(repo, task_dir, wt_path)
    if not task:
        raise TaskNotFoundError(task_dir)

    before = task.current_phase
    after = phases.advance(task)
    if after != before:
        _dual_write(repo, task_dir, wt_path, current_phase=after)
        logger.info("Task %s advanced to phase %s", task.id, after)
    return after


def complete_task(
    repo_root: str | Path,
    task_dir: str,
    pr_url: str | None,
    worktree_path: str | Path | None = None,
) -> Task:
    """Mark a task completed at its create-pr phase (or the last phase)."""
    repo = Path(repo_root)
    if worktree_path is None:
        main = tasks_mod.read_task(repo / task_dir)
        worktree_path = main.worktree_path if main else None

    task = _read_task_copy(repo, task_dir, worktree_path)
    if not task:
        raise TaskNotFoundError(task_dir)

    final_phase = phases.phase_for_action(task, "create-pr") or phases.max_phase(task)
    return _dual_write(
        repo,
        task_dir,
        worktree_path,
        status="completed",
        pr_url=pr_url,
        current_phase=final_phase,
    )


def get_agent_for_task(
    repo_root: str | Path,
    task_dir: str,
    config: Config | None = None,
) -> Agent | None:
    config = config or get_config()
    repo = Path(repo_root)
    _, rel = resolve_task_dir(task_dir, repo)
    return registry_mod.get_agent_by_task_dir(_registry_path(repo, config), rel)


def has_active_pipeline(
    repo_root: str | Path,
    task_dir: str,
    config: Config | None = None,
) -> bool:
    agent = get_agent_for_task(repo_root, task_dir, config)
    return bool(agent and is_alive(agent.pid))


# ── Planning ──────────────────────────────────────────────────────────────────


def plan_pipeline(
    repo_root: str | Path,
    requirement: str,
    name: str,
    dev_type: str = "backend",
    config: Config | None = None,
) -> PlanResult:
    """Create a task and launch the plan agent on it from the repo root."""
    config = config or get_config()
    repo = Path(repo_root)
    if dev_type not in PLAN_DEV_TYPES:
        raise PreconditionError(
            f"Invalid dev type: {dev_type}",
            hint=f"Use one of: {', '.join(PLAN_DEV_TYPES)}",
        )
    adapter = _require_multi_agent(repo, config)

    task_dir = tasks_mod.create_task(
        repo, title=name, slug=slugify(name), description=requirement, dev_type=dev_type
    )
    task_path = repo / task_dir

    launched = adapter.launch_agent(
        PLAN_AGENT,
        repo,
        background=True,
        prompt=f"Start planning for task: {name}",
        state_dir=task_path,
        log_name=PLAN_LOG_FILE,
        env={
            "PLAN_TASK_NAME": name,
            "PLAN_DEV_TYPE": dev_type,
            "PLAN_TASK_DIR": task_dir,
            "PLAN_REQUIREMENT": requirement,
        },
    )
    logger.info("Plan agent started for %s (PID %s)", task_dir, launched.pid)
    return PlanResult(
        task_dir=task_dir,
        pid=launched.pid,
        log_file=launched.log_file or str(task_path / PLAN_LOG_FILE),
        session_id=launched.session_id,
    )
