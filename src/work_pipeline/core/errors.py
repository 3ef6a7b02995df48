"""Pipeline error hierarchy.

Errors fall into three kinds that callers can branch on:

- ``PreconditionError``: the task or environment is not ready; nothing was
  changed and the same command can be retried once the operator fixes it.
- ``ConflictError``: a filesystem resource is in the way (existing or dirty
  worktree, failed setup command); resolve it and retry.
- ``ProcessError``: the agent process could not be launched.
"""


class PipelineError(Exception):
    """Base class for pipeline failures. ``hint`` tells the operator what to do next."""

    hint: str | None = None

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint


class AgentNotFoundError(PipelineError):
    hint = "Use 'wp pipeline status' to list registered agents."

    def __init__(self, agent_id: str):
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = agent_id


# ── Preconditions ─────────────────────────────────────────────────────────────


class PreconditionError(PipelineError):
    pass


class TaskNotFoundError(PreconditionError):
    def __init__(self, task_dir: str):
        super().__init__(f"Task not found: {task_dir}")
        self.task_dir = task_dir


class TaskRejectedError(PreconditionError):
    hint = "Review REJECTED.md and revise the requirements."

    def __init__(self, task_dir: str, reason: str = "Unknown reason"):
        super().__init__(f"Task was rejected: {reason.strip() or 'Unknown reason'}")
        self.task_dir = task_dir
        self.reason = reason


class MissingPlanError(PreconditionError):
    hint = "Run 'wp pipeline plan' first to create the PRD."

    def __init__(self, task_dir: str):
        super().__init__(
            f"prd.md not found in {task_dir} - the plan agent may not have completed"
        )
        self.task_dir = task_dir


class BranchNotSetError(PreconditionError):
    hint = "Edit task.json and set the 'branch' field."

    def __init__(self, task_dir: str):
        super().__init__(f"branch field not set in task.json: {task_dir}")
        self.task_dir = task_dir


class AgentAlreadyRunningError(PreconditionError):
    hint = "Stop it first with 'wp pipeline stop', or check 'wp pipeline status'."

    def __init__(self, agent_id: str, pid: int):
        super().__init__(f"Task already has a running agent '{agent_id}' (PID {pid})")
        self.agent_id = agent_id
        self.pid = pid


class UnsupportedPlatformError(PreconditionError):
    hint = "Use the manual workflow or switch to a supported platform."


# ── Resource conflicts ────────────────────────────────────────────────────────


class ConflictError(PipelineError):
    pass


class WorktreeExistsError(ConflictError):
    hint = "Remove the directory or register it as a worktree for the branch."

    def __init__(self, path: str, branch: str):
        super().__init__(f"Path already exists and is not a worktree for '{branch}': {path}")
        self.path = path
        self.branch = branch


class DirtyWorktreeError(ConflictError):
    hint = "Commit or discard the changes, or pass --force to discard them."

    def __init__(self, path: str, changes: list[str]):
        super().__init__(
            f"Worktree has {len(changes)} uncommitted change(s): {path}"
        )
        self.path = path
        self.changes = changes


class ArchiveExistsError(ConflictError):
    hint = "Rename or remove the archived directory, then archive again."

    def __init__(self, path: str):
        super().__init__(f"Archive target already exists: {path}")
        self.path = path


class SetupFailedError(ConflictError):
    hint = "The worktree was left in place; fix the command and retry."

    def __init__(self, path: str, command: str, returncode: int):
        super().__init__(
            f"Post-create command failed (exit {returncode}) in {path}: {command}"
        )
        self.path = path
        self.command = command
        self.returncode = returncode


# ── Process ───────────────────────────────────────────────────────────────────


class ProcessError(PipelineError):
    pass


class LaunchError(ProcessError):
    pass
