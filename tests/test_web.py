"""Tests for the JSON status API."""

import os
import subprocess

import pytest
from starlette.testclient import TestClient

from work_pipeline.core import registry as registry_mod
from work_pipeline.core import tasks as tasks_mod
from work_pipeline.core.paths import get_registry_path
from work_pipeline.store.models import Agent
from work_pipeline.web.app import create_app


def _dead_pid() -> int:
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


@pytest.fixture
def web_env(workflow_repo):
    """Seed a task and a registered (already exited) agent, then serve the app."""
    env = {"WP_REPO_PATH": str(workflow_repo)}
    old_env = {k: os.environ.get(k) for k in [*env, "WP_DEVELOPER"]}
    os.environ.update(env)
    os.environ.pop("WP_DEVELOPER", None)

    rel = tasks_mod.create_task(workflow_repo, "Build API")
    tasks_mod.update_task(workflow_repo / rel, branch="feature/api", status="in_progress")
    tasks_mod.create_task(workflow_repo, "Write docs")

    registry_mod.add_agent(
        get_registry_path(workflow_repo, "tester"),
        Agent(
            id="build-api",
            worktree_path=str(workflow_repo),
            pid=_dead_pid(),
            started_at="2026-01-01T10:00:00",
            task_dir=rel,
        ),
    )

    yield TestClient(create_app()), workflow_repo

    for k, v in old_env.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v


class TestAgentsAPI:
    def test_list_agents(self, web_env):
        client, _ = web_env
        resp = client.get("/api/agents")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 1
        assert data[0]["agent"]["id"] == "build-api"
        # Dead pid is synced to stopped on read
        assert data[0]["agent"]["status"] == "stopped"
        assert data[0]["process_running"] is False
        assert data[0]["task"]["branch"] == "feature/api"

    def test_get_agent(self, web_env):
        client, _ = web_env
        resp = client.get("/api/agents/build-api")
        assert resp.status_code == 200
        assert resp.json()["task"]["title"] == "Build API"

    def test_get_agent_not_found(self, web_env):
        client, _ = web_env
        resp = client.get("/api/agents/ghost")
        assert resp.status_code == 404
        assert "hint" in resp.json()

    def test_registry(self, web_env):
        client, _ = web_env
        resp = client.get("/api/registry")
        assert resp.status_code == 200
        data = resp.json()
        assert data["version"] == 1
        assert [a["id"] for a in data["agents"]] == ["build-api"]

    def test_no_developer(self, web_env):
        client, repo = web_env
        (repo / ".workflow" / ".developer").unlink()
        resp = client.get("/api/agents")
        assert resp.status_code == 400
        assert resp.json()["error"] == "No developer set"


class TestTasksAPI:
    def test_list_tasks(self, web_env):
        client, _ = web_env
        resp = client.get("/api/tasks")
        assert resp.status_code == 200
        assert sorted(t["id"] for t in resp.json()) == ["build-api", "write-docs"]

    def test_filter_by_status(self, web_env):
        client, _ = web_env
        resp = client.get("/api/tasks?status=in_progress")
        assert [t["id"] for t in resp.json()] == ["build-api"]

    def test_get_task(self, web_env):
        client, _ = web_env
        resp = client.get("/api/tasks/write-docs")
        assert resp.status_code == 200
        data = resp.json()
        assert data["title"] == "Write docs"
        assert data["dir"].endswith("-write-docs")

    def test_get_task_not_found(self, web_env):
        client, _ = web_env
        resp = client.get("/api/tasks/nonexistent")
        assert resp.status_code == 404


class TestWorktreesAPI:
    def test_list_worktrees(self, web_env):
        client, repo = web_env
        resp = client.get("/api/worktrees")
        assert resp.status_code == 200
        data = resp.json()
        assert [wt["branch"] for wt in data] == ["main"]
