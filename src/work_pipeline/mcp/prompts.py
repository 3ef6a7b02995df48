"""MCP prompt templates for common pipeline workflows."""

from work_pipeline.mcp.server import mcp


@mcp.prompt()
def plan_feature(requirement: str, dev_type: str = "backend") -> str:
    """Generate a prompt to turn a requirement into a planned task."""
    return (
        f"I want the following built:\n\n"
        f"{requirement}\n\n"
        f"Please:\n"
        f"1. Pick a short kebab-case name for the task\n"
        f"2. Use plan_task with that name, the requirement and dev_type='{dev_type}'\n"
        f"3. Tell me the task directory and where the plan log is\n\n"
        f"Once prd.md exists and a branch is set in task.json, start_pipeline can run it."
    )


@mcp.prompt()
def pipeline_report() -> str:
    """Generate a prompt for a report on all running pipelines."""
    return (
        "Please report on the current pipelines.\n\n"
        "Use pipeline_status without an agent id, then provide:\n"
        "1. Which agents are running and at which phase\n"
        "2. Agents that stopped, with their resume command\n"
        "3. Anything that looks stuck (long elapsed time, no recent log lines)\n"
        "4. Finished tasks whose worktrees could be cleaned up"
    )


@mcp.prompt()
def review_pipeline(agent_id: str) -> str:
    """Generate a prompt to review an agent's work before opening a PR."""
    return (
        f"Please review the work done by pipeline agent '{agent_id}'.\n\n"
        f"Use pipeline_status with agent_id='{agent_id}' to see its phase, "
        f"modified files and recent log.\n"
        f"Then provide:\n"
        f"1. Summary of what the agent has done so far\n"
        f"2. Whether the current phase looks complete\n"
        f"3. Any issues or concerns\n"
        f"4. Whether it's ready for create_pr (try dry_run=True first)"
    )
