"""CLI entry point for the work pipeline."""

import functools
import json
import logging
import sys
from pathlib import Path

import click

from work_pipeline.config import get_config, load_worktree_config
from work_pipeline.core import pipeline as pipeline_mod
from work_pipeline.core import pr as pr_mod
from work_pipeline.core import registry as registry_mod
from work_pipeline.core import tasks as tasks_mod
from work_pipeline.core import worktrees as worktrees_mod
from work_pipeline.core.errors import PipelineError
from work_pipeline.core.paths import get_registry_path, get_repo_root, require_developer
from work_pipeline.core.platforms import get_platform_adapter
from work_pipeline.integrations.git import GitError
from work_pipeline.integrations.github import GitHubError
from work_pipeline.store.models import DEV_TYPES, PLAN_DEV_TYPES


def _repo() -> Path:
    config = get_config()
    return config.repo_path or get_repo_root()


def _info(message: str, json_output: bool = False) -> None:
    """Human-facing message on stderr; silent in JSON mode."""
    if not json_output:
        click.echo(message, err=True)


def _emit_json(data) -> None:
    click.echo(json.dumps(data, indent=2))


def handle_errors(f):
    """Report pipeline, git and gh failures as a message plus hint, exit 1."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except PipelineError as e:
            click.secho(f"Error: {e}", fg="red", err=True)
            if e.hint:
                click.echo(f"Hint: {e.hint}", err=True)
            sys.exit(1)
        except (GitError, GitHubError) as e:
            click.secho(f"Error: {e}", fg="red", err=True)
            sys.exit(1)

    return wrapper


def _require_agent_file(agent_type: str) -> None:
    repo = _repo()
    adapter = get_platform_adapter(repo, get_config())
    if not adapter.agent_file_exists(agent_type, repo):
        raise PipelineError(
            f"Agent definition not found: {adapter.agent_file_path(agent_type, repo)}",
            hint=f"Add {adapter.config_dir}/agents/{agent_type}.md to the repository.",
        )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr")
def main(verbose):
    """wp - Work Pipeline CLI"""
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        force=True,
    )


# ── Pipeline Commands ─────────────────────────────────────────────────────────


@main.group("pipeline")
def pipeline_group():
    """Run task agents in isolated worktrees."""
    pass


@pipeline_group.command("plan")
@click.option("--name", "-n", required=True, help="Task name (used for the directory slug)")
@click.option(
    "--type", "-t", "dev_type",
    default="backend",
    type=click.Choice(PLAN_DEV_TYPES),
    help="Development type",
)
@click.option("--requirement", "-r", required=True, help="What should be built")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def pipeline_plan(name, dev_type, requirement, json_output):
    """Create a task and launch the plan agent to write its PRD."""
    _require_agent_file(pipeline_mod.PLAN_AGENT)
    result = pipeline_mod.plan_pipeline(_repo(), requirement, name, dev_type, get_config())

    if json_output:
        _emit_json(result.to_dict())
        return

    _info(f"Plan agent started (PID {result.pid})")
    _info(f"  Task: {result.task_dir}")
    _info(f"  Log: {result.log_file}")
    click.echo(result.task_dir)


@pipeline_group.command("start")
@click.argument("task_dir")
@click.option("--agent-verbose", is_flag=True, help="Pass --verbose to the agent")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def pipeline_start(task_dir, agent_verbose, json_output):
    """Start the dispatch agent for TASK_DIR in its worktree."""
    _require_agent_file(pipeline_mod.DISPATCH_AGENT)
    result = pipeline_mod.start_pipeline(_repo(), task_dir, get_config(), verbose=agent_verbose)

    if json_output:
        _emit_json(result.to_dict())
        return

    _info(f"Pipeline started: {result.agent.id} (PID {result.agent.pid})")
    _info(f"  Worktree: {result.worktree_path}")
    _info(f"  Log: {result.log_file}")
    click.echo(result.agent.id)


@pipeline_group.command("stop")
@click.argument("agent_id")
@click.option("--force", is_flag=True, help="Kill instead of terminating gracefully")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def pipeline_stop(agent_id, force, json_output):
    """Stop a running agent. Its worktree is kept."""
    agent = pipeline_mod.stop_pipeline(_repo(), agent_id, force=force, config=get_config())
    if json_output:
        _emit_json(agent.to_dict())
        return
    _info(f"Stopped agent {agent.id} (PID {agent.pid})")


@pipeline_group.command("status")
@click.argument("agent_id", required=False)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def pipeline_status(agent_id, json_output):
    """Show pipeline status for one agent, or all of them."""
    repo = _repo()
    config = get_config()

    if agent_id:
        status = pipeline_mod.get_status(repo, agent_id, config)
        if json_output:
            _emit_json(status.to_dict())
            return
        _print_status_detail(status)
        return

    statuses = pipeline_mod.list_statuses(repo, config)
    if json_output:
        _emit_json([s.to_dict() for s in statuses])
        return

    if not statuses:
        _info("No agents registered.")
        return

    for s in statuses:
        icon = "●" if s.process_running else "○"
        click.echo(
            f"  {icon} {s.agent.id}: {s.task.phase} [{s.task.status}] "
            f"PID {s.agent.pid} ({s.elapsed})"
        )


def _print_status_detail(status) -> None:
    state = "running" if status.process_running else status.agent.status
    click.echo(f"Agent: {status.agent.id}")
    click.echo(f"  State: {state} (PID {status.agent.pid})")
    click.echo(f"  Task: {status.task.title or status.task.id} [{status.task.status}]")
    click.echo(f"  Branch: {status.task.branch or '-'}")
    click.echo(f"  Phase: {status.task.phase}")
    click.echo(f"  Elapsed: {status.elapsed}")
    click.echo(f"  Modified files: {status.modified_files}")
    click.echo(f"  Worktree: {status.agent.worktree_path}")
    if status.last_log_lines:
        click.echo("  Recent log:")
        for line in status.last_log_lines:
            click.echo(f"    {line}")
    if status.resume_command:
        click.echo(f"  Resume: {status.resume_command}")


@pipeline_group.command("cleanup")
@click.argument("agent_id")
@click.option("--archive", is_flag=True, help="Archive the task afterwards")
@click.option("--force", is_flag=True, help="Discard uncommitted changes")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def pipeline_cleanup(agent_id, archive, force, json_output):
    """Stop an agent, remove its worktree and registry entry."""
    result = pipeline_mod.cleanup_pipeline(
        _repo(), agent_id, archive=archive, force=force, config=get_config()
    )
    if json_output:
        _emit_json(result.to_dict())
        return
    _info(f"Cleaned up {result.agent_id}")
    if result.archived_to:
        _info(f"  Archived to: {result.archived_to}")


@pipeline_group.command("advance")
@click.argument("target")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def pipeline_advance(target, json_output):
    """Advance the phase of an agent's task (or a task directory)."""
    phase = pipeline_mod.advance_pipeline(_repo(), target, get_config())
    if json_output:
        _emit_json({"current_phase": phase})
        return
    click.echo(phase)


@pipeline_group.command("verify")
@click.argument("target", required=False)
@handle_errors
def pipeline_verify(target):
    """Run the configured verify commands in a task's worktree."""
    repo = _repo()
    path = repo
    if target:
        _, wt_path = pipeline_mod.resolve_target(repo, target, get_config())
        if wt_path and Path(wt_path).is_dir():
            path = Path(wt_path)

    config = load_worktree_config(repo)
    if not config.verify:
        _info("No verify commands configured.")
        return

    results = worktrees_mod.verify_worktree(path, config)
    for r in results:
        mark = "✓" if r.ok else "✗"
        click.echo(f"  {mark} {r.command} (exit {r.returncode})")
    if not all(r.ok for r in results):
        sys.exit(1)


@pipeline_group.command("create-pr")
@click.argument("target", required=False)
@click.option("--draft/--ready", default=True, help="Open the PR as a draft")
@click.option("--dry-run", is_flag=True, help="Show what would happen without committing")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def pipeline_create_pr(target, draft, dry_run, json_output):
    """Commit, push and open a PR for an agent's task (or the current task)."""
    result = pr_mod.create_pr(_repo(), target, draft=draft, dry_run=dry_run, config=get_config())
    if json_output:
        _emit_json(result.to_dict())
        return
    if result.dry_run:
        _info("Dry run: nothing was committed or pushed.")
    click.echo(result.pr_url)


@pipeline_group.command("registry")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def pipeline_registry(json_output):
    """List raw registry entries."""
    repo = _repo()
    config = get_config()
    path = get_registry_path(repo, require_developer(repo, config.developer))
    agents = registry_mod.list_agents(path)

    if json_output:
        _emit_json([a.to_dict() for a in agents])
        return

    if not agents:
        _info("Registry is empty.")
        return
    for a in agents:
        click.echo(f"  {a.id}  PID {a.pid}  {a.status}  {a.task_dir}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage task directories."""
    pass


@task_group.command("create")
@click.argument("title")
@click.option("--slug", default=None, help="Directory slug (derived from title if omitted)")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--dev-type", default=None, type=click.Choice(DEV_TYPES), help="Development type")
@click.option("--assignee", default=None, help="Developer the task is assigned to")
@handle_errors
def task_create(title, slug, description, dev_type, assignee):
    """Create a new task directory."""
    try:
        task_dir = tasks_mod.create_task(
            _repo(), title, slug=slug, description=description,
            dev_type=dev_type, assignee=assignee,
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    _info(f"Created task: {title}")
    click.echo(task_dir)


@task_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, json_output):
    """List active tasks."""
    tasks = tasks_mod.list_tasks(_repo(), status=status)

    if json_output:
        _emit_json([{**t.to_dict(), "dir": p.name} for t, p in tasks])
        return

    if not tasks:
        _info("No tasks found.")
        return

    status_icons = {
        "planning": "○",
        "in_progress": "●",
        "completed": "✓",
        "rejected": "✗",
    }
    for task, path in tasks:
        icon = status_icons.get(task.status, "?")
        branch = f" [branch: {task.branch}]" if task.branch else ""
        click.echo(f"  {icon} {path.name}: {task.title} ({task.status}){branch}")


@task_group.command("archive")
@click.argument("name")
@handle_errors
def task_archive(name):
    """Move a task to the archive."""
    archived = tasks_mod.archive_task(_repo(), name)
    if not archived:
        click.echo(f"Task not found: {name}", err=True)
        sys.exit(1)
    _info(f"Archived: {name}")
    click.echo(archived)


# ── Web / MCP ─────────────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the read-only JSON status API."""
    from work_pipeline.web.app import run_server

    click.echo(f"Serving pipeline status at http://{host}:{port}/api/agents", err=True)
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from work_pipeline.mcp.server import mcp
    from work_pipeline.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
