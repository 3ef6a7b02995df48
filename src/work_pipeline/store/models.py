"""Data models for the work pipeline."""

from dataclasses import dataclass, field
from typing import Any

TASK_STATUSES = ("planning", "in_progress", "completed", "archived", "rejected")
PHASE_ACTIONS = ("implement", "check", "debug", "finish", "create-pr")
AGENT_STATUSES = ("running", "stopped", "failed")
DEV_TYPES = ("backend", "frontend", "fullstack", "test", "docs")
PLAN_DEV_TYPES = ("backend", "frontend", "fullstack", "test")

REGISTRY_VERSION = 1


@dataclass
class PhaseAction:
    phase: int
    action: str

    def to_dict(self) -> dict:
        return {"phase": self.phase, "action": self.action}


DEFAULT_PHASES = (
    PhaseAction(1, "implement"),
    PhaseAction(2, "check"),
    PhaseAction(3, "finish"),
    PhaseAction(4, "create-pr"),
)


@dataclass
class Task:
    id: str
    title: str
    status: str = "planning"
    branch: str | None = None
    base_branch: str | None = None
    worktree_path: str | None = None
    current_phase: int = 0
    next_action: list[PhaseAction] = field(default_factory=lambda: list(DEFAULT_PHASES))
    pr_url: str | None = None
    dev_type: str | None = None
    # Keys we don't model (name, priority, creator, notes, ...) survive a rewrite.
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "title": self.title,
                "status": self.status,
                "branch": self.branch,
                "base_branch": self.base_branch,
                "worktree_path": self.worktree_path,
                "current_phase": self.current_phase,
                "next_action": [a.to_dict() for a in self.next_action],
                "pr_url": self.pr_url,
                "dev_type": self.dev_type,
            }
        )
        return data


@dataclass
class Agent:
    id: str
    worktree_path: str
    pid: int
    started_at: str
    task_dir: str
    status: str = "running"
    session_id: str | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "worktree_path": self.worktree_path,
            "pid": self.pid,
            "started_at": self.started_at,
            "task_dir": self.task_dir,
            "status": self.status,
        }
        if self.session_id:
            data["session_id"] = self.session_id
        return data


@dataclass
class Registry:
    agents: list[Agent] = field(default_factory=list)
    version: int = REGISTRY_VERSION

    def to_dict(self) -> dict:
        return {"agents": [a.to_dict() for a in self.agents], "version": self.version}


@dataclass
class WorktreeResult:
    path: str
    branch: str
    base_branch: str
    already_existed: bool = False
    files_copied: int = 0
    hooks_run: int = 0


@dataclass
class LaunchResult:
    pid: int
    session_id: str
    log_file: str | None = None
    runner_script: str | None = None
    session_id_file: str | None = None
    exit_code: int | None = None


@dataclass
class StartResult:
    agent: Agent
    worktree_path: str
    log_file: str

    def to_dict(self) -> dict:
        return {
            "agent": self.agent.to_dict(),
            "worktree_path": self.worktree_path,
            "log_file": self.log_file,
        }


@dataclass
class TaskSummary:
    id: str
    title: str
    status: str
    branch: str | None
    current_phase: int
    phase: str


@dataclass
class PipelineStatus:
    agent: Agent
    task: TaskSummary
    process_running: bool
    last_log_lines: list[str] = field(default_factory=list)
    resume_command: str | None = None
    modified_files: int = 0
    elapsed: str = "N/A"

    def to_dict(self) -> dict:
        return {
            "agent": self.agent.to_dict(),
            "task": {
                "id": self.task.id,
                "title": self.task.title,
                "status": self.task.status,
                "branch": self.task.branch,
                "current_phase": self.task.current_phase,
                "phase": self.task.phase,
            },
            "process_running": self.process_running,
            "last_log_lines": self.last_log_lines,
            "resume_command": self.resume_command,
            "modified_files": self.modified_files,
            "elapsed": self.elapsed,
        }


@dataclass
class PrResult:
    pr_url: str
    branch: str
    base_branch: str
    committed: bool = False
    pushed: bool = False
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "pr_url": self.pr_url,
            "branch": self.branch,
            "base_branch": self.base_branch,
            "committed": self.committed,
            "pushed": self.pushed,
            "dry_run": self.dry_run,
        }


@dataclass
class CleanupResult:
    agent_id: str
    worktree_removed: bool
    archived_to: str | None = None

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "worktree_removed": self.worktree_removed,
            "archived_to": self.archived_to,
        }


@dataclass
class PlanResult:
    task_dir: str
    pid: int
    log_file: str
    session_id: str

    def to_dict(self) -> dict:
        return {
            "task_dir": self.task_dir,
            "pid": self.pid,
            "log_file": self.log_file,
            "session_id": self.session_id,
        }
