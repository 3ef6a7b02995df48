"""Agent registry: the per-operator list of spawned agents.

Stored as ``{"agents": [...], "version": 1}`` in
``.workflow/workspace/<developer>/.agents/registry.json``. Every mutation is a
read-modify-write under an exclusive lock on ``registry.json.lock``; a missing
or corrupt file reads as an empty registry.
"""

import logging
import os
from pathlib import Path

from work_pipeline.core.launcher import is_alive
from work_pipeline.store.jsonfile import locked, read_json, write_json
from work_pipeline.store.models import AGENT_STATUSES, REGISTRY_VERSION, Agent, Registry

logger = logging.getLogger(__name__)


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _dict_to_agent(data: dict) -> Agent | None:
    try:
        agent = Agent(
            id=str(data["id"]),
            worktree_path=str(data["worktree_path"]),
            pid=int(data["pid"]),
            started_at=str(data["started_at"]),
            task_dir=str(data["task_dir"]),
            status=data.get("status", "running"),
            session_id=data.get("session_id"),
        )
    except (KeyError, TypeError, ValueError):
        return None
    if agent.status not in AGENT_STATUSES:
        return None
    return agent


def read_registry(registry_path: str | Path) -> Registry:
    data = read_json(registry_path)
    if data is None:
        return Registry()

    raw_agents = data.get("agents")
    if not isinstance(raw_agents, list):
        logger.warning("Invalid registry format in %s, treating as empty", registry_path)
        return Registry()

    agents = []
    for raw in raw_agents:
        agent = _dict_to_agent(raw) if isinstance(raw, dict) else None
        if agent is None:
            logger.warning("Invalid registry format in %s, treating as empty", registry_path)
            return Registry()
        agents.append(agent)

    version = data.get("version", REGISTRY_VERSION)
    return Registry(agents=agents, version=version if isinstance(version, int) else REGISTRY_VERSION)


def write_registry(registry_path: str | Path, registry: Registry) -> None:
    write_json(registry_path, registry.to_dict())


def ensure_registry(registry_path: str | Path) -> None:
    """Create an empty registry file on first touch."""
    if not Path(registry_path).exists():
        with locked(registry_path):
            if not Path(registry_path).exists():
                write_registry(registry_path, Registry())


# ── Mutations ───────────────────────────────────────────────────────────────


def add_agent(registry_path: str | Path, agent: Agent) -> Agent:
    """Register an agent, replacing any existing record with the same id."""
    with locked(registry_path):
        registry = read_registry(registry_path)
        registry.agents = [a for a in registry.agents if a.id != agent.id]
        registry.agents.append(agent)
        write_registry(registry_path, registry)
    logger.debug("Registered agent %s (PID %s)", agent.id, agent.pid)
    return agent


def remove_agent(registry_path: str | Path, agent_id: str) -> bool:
    """Remove an agent by id. Returns True if a record was removed."""
    with locked(registry_path):
        registry = read_registry(registry_path)
        before = len(registry.agents)
        registry.agents = [a for a in registry.agents if a.id != agent_id]
        removed = len(registry.agents) != before
        if removed:
            write_registry(registry_path, registry)
    return removed


def remove_agent_by_worktree(registry_path: str | Path, worktree_path: str | Path) -> bool:
    target = os.path.realpath(worktree_path)
    with locked(registry_path):
        registry = read_registry(registry_path)
        before = len(registry.agents)
        registry.agents = [
            a for a in registry.agents if os.path.realpath(a.worktree_path) != target
        ]
        removed = len(registry.agents) != before
        if removed:
            write_registry(registry_path, registry)
    return removed


def update_agent_status(registry_path: str | Path, agent_id: str, status: str) -> Agent | None:
    if status not in AGENT_STATUSES:
        raise ValueError(f"Invalid agent status: {status}")
    with locked(registry_path):
        registry = read_registry(registry_path)
        agent = next((a for a in registry.agents if a.id == agent_id), None)
        if agent is None:
            return None
        agent.status = status
        write_registry(registry_path, registry)
    return agent


def sync_statuses(registry_path: str | Path) -> int:
    """Mark running agents whose PID is gone as stopped. Returns the number changed."""
    with locked(registry_path):
        registry = read_registry(registry_path)
        changed = 0
        for agent in registry.agents:
            if agent.status == "running" and not is_alive(agent.pid):
                agent.status = "stopped"
                changed += 1
                logger.info("Agent %s (PID %s) is no longer running", agent.id, agent.pid)
        if changed:
            write_registry(registry_path, registry)
    return changed


# ── Queries ─────────────────────────────────────────────────────────────────


def list_agents(registry_path: str | Path) -> list[Agent]:
    return read_registry(registry_path).agents


def get_agent(registry_path: str | Path, agent_id: str) -> Agent | None:
    return next((a for a in list_agents(registry_path) if a.id == agent_id), None)


def get_agent_by_worktree(registry_path: str | Path, worktree_path: str | Path) -> Agent | None:
    target = os.path.realpath(worktree_path)
    return next(
        (a for a in list_agents(registry_path) if os.path.realpath(a.worktree_path) == target),
        None,
    )


def get_agent_by_task_dir(registry_path: str | Path, task_dir: str) -> Agent | None:
    return next((a for a in list_agents(registry_path) if a.task_dir == task_dir), None)


def search_agent(registry_path: str | Path, term: str) -> Agent | None:
    """First agent whose id equals term or whose task_dir contains it."""
    agents = list_agents(registry_path)
    exact = next((a for a in agents if a.id == term), None)
    if exact:
        return exact
    return next((a for a in agents if term in a.task_dir), None)
