"""MCP server exposing the work pipeline to calling tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from mcp.server.fastmcp import Context, FastMCP

from work_pipeline.config import Config, get_config
from work_pipeline.core import pipeline as pipeline_mod
from work_pipeline.core import pr as pr_mod
from work_pipeline.core import tasks as tasks_mod
from work_pipeline.core import worktrees as worktrees_mod
from work_pipeline.core.errors import PipelineError
from work_pipeline.core.paths import get_repo_root
from work_pipeline.integrations.git import GitError
from work_pipeline.integrations.github import GitHubError


@dataclass
class AppContext:
    repo_root: Path
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Resolve the repository once on startup."""
    config = get_config()
    yield AppContext(repo_root=config.repo_path or get_repo_root(), config=config)


mcp = FastMCP("work-pipeline", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _error(e: Exception) -> dict:
    d = {"error": str(e)}
    if isinstance(e, PipelineError) and e.hint:
        d["hint"] = e.hint
    return d


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def list_tasks(ctx: Context, status: str | None = None) -> list[dict]:
    """List active tasks, optionally filtered by status
    (planning, in_progress, completed, rejected)."""
    app = _ctx(ctx)
    return [
        {**t.to_dict(), "dir": p.name}
        for t, p in tasks_mod.list_tasks(app.repo_root, status=status)
    ]


@mcp.tool()
def get_task(ctx: Context, name: str) -> dict:
    """Get a task by directory name, slug or id."""
    app = _ctx(ctx)
    found = tasks_mod.find_task(app.repo_root, name)
    if not found:
        return {"error": f"Task not found: {name}"}
    task, path = found
    return {**task.to_dict(), "dir": path.name}


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    dev_type: str | None = None,
) -> dict:
    """Create a task directory with a fresh task.json (status: planning)."""
    app = _ctx(ctx)
    try:
        task_dir = tasks_mod.create_task(
            app.repo_root, title, description=description, dev_type=dev_type
        )
    except ValueError as e:
        return {"error": str(e)}
    return {"task_dir": task_dir}


# ── Pipeline Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def plan_task(ctx: Context, name: str, requirement: str, dev_type: str = "backend") -> dict:
    """Create a task and launch the plan agent to write its prd.md.
    dev_type: backend, frontend, fullstack or test."""
    app = _ctx(ctx)
    try:
        result = pipeline_mod.plan_pipeline(app.repo_root, requirement, name, dev_type, app.config)
    except PipelineError as e:
        return _error(e)
    return result.to_dict()


@mcp.tool()
def start_pipeline(ctx: Context, task_dir: str) -> dict:
    """Start the dispatch agent for a planned task in its own git worktree.
    The task needs a prd.md and a branch. The agent runs in the background;
    use pipeline_status to follow it."""
    app = _ctx(ctx)
    try:
        result = pipeline_mod.start_pipeline(app.repo_root, task_dir, app.config)
    except (PipelineError, GitError) as e:
        return _error(e)
    return result.to_dict()


@mcp.tool()
def pipeline_status(ctx: Context, agent_id: str | None = None) -> dict | list[dict]:
    """Status of one pipeline agent, or all of them when agent_id is omitted."""
    app = _ctx(ctx)
    try:
        if agent_id:
            return pipeline_mod.get_status(app.repo_root, agent_id, app.config).to_dict()
        return [s.to_dict() for s in pipeline_mod.list_statuses(app.repo_root, app.config)]
    except PipelineError as e:
        return _error(e)


@mcp.tool()
def stop_pipeline(ctx: Context, agent_id: str, force: bool = False) -> dict:
    """Stop a pipeline agent. Its worktree is kept for inspection or resume."""
    app = _ctx(ctx)
    try:
        agent = pipeline_mod.stop_pipeline(app.repo_root, agent_id, force=force, config=app.config)
    except PipelineError as e:
        return _error(e)
    return agent.to_dict()


@mcp.tool()
def cleanup_pipeline(
    ctx: Context,
    agent_id: str,
    archive: bool = False,
    force: bool = False,
) -> dict:
    """Stop an agent and remove its worktree and registry entry.
    Refuses when the worktree has uncommitted changes unless force is set."""
    app = _ctx(ctx)
    try:
        result = pipeline_mod.cleanup_pipeline(
            app.repo_root, agent_id, archive=archive, force=force, config=app.config
        )
    except (PipelineError, GitError) as e:
        return _error(e)
    return result.to_dict()


@mcp.tool()
def advance_pipeline(ctx: Context, target: str) -> dict:
    """Advance the phase of an agent's task (agent id or task directory)."""
    app = _ctx(ctx)
    try:
        phase = pipeline_mod.advance_pipeline(app.repo_root, target, app.config)
    except PipelineError as e:
        return _error(e)
    return {"current_phase": phase}


@mcp.tool()
def create_pr(
    ctx: Context,
    target: str | None = None,
    draft: bool = True,
    dry_run: bool = False,
) -> dict:
    """Commit and push a task's work and open (or reuse) a pull request."""
    app = _ctx(ctx)
    try:
        result = pr_mod.create_pr(
            app.repo_root, target, draft=draft, dry_run=dry_run, config=app.config
        )
    except (PipelineError, GitError, GitHubError) as e:
        return _error(e)
    return result.to_dict()


@mcp.tool()
def list_worktrees(ctx: Context) -> list[dict]:
    """List git worktrees of the repository."""
    app = _ctx(ctx)
    try:
        return worktrees_mod.list_worktrees(app.repo_root)
    except GitError as e:
        return [_error(e)]
