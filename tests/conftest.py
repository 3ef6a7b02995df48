"""Shared fixtures: temporary git repos, a workflow directory and a fake agent binary."""

import os
import signal
import subprocess
import tempfile
from pathlib import Path

import pytest

from work_pipeline.config import Config
from work_pipeline.core import launcher
from work_pipeline.core import tasks as tasks_mod

FAKE_AGENT = """#!/bin/sh
echo "args: $*"
echo "plan task: ${PLAN_TASK_NAME:-none}"
exec sleep 30
"""


def _git(args: list[str], cwd: Path) -> None:
    subprocess.run(["git", *args], cwd=cwd, capture_output=True, check=True)


@pytest.fixture
def git_repo():
    """Create a temporary git repo with an initial commit.

    The repo lives in ``<tmp>/repo`` so the default ``../worktrees`` base
    directory stays inside the temporary directory.
    """
    with tempfile.TemporaryDirectory() as tmp:
        repo = Path(tmp).resolve() / "repo"
        repo.mkdir()
        _git(["init"], repo)
        _git(["checkout", "-b", "main"], repo)
        _git(["config", "user.name", "Test"], repo)
        _git(["config", "user.email", "test@test.com"], repo)
        (repo / "README.md").write_text("# Test")
        _git(["add", "."], repo)
        _git(["commit", "-m", "init"], repo)
        yield repo


@pytest.fixture
def workflow_repo(git_repo):
    """Git repo with a .workflow dir, a developer and Claude agent definitions."""
    workflow = git_repo / ".workflow"
    workflow.mkdir()
    (workflow / ".developer").write_text("name=tester\n")
    agents = git_repo / ".claude" / "agents"
    agents.mkdir(parents=True)
    (agents / "dispatch.md").write_text("# dispatch\n")
    (agents / "plan.md").write_text("# plan\n")
    return git_repo


@pytest.fixture
def fake_agent(git_repo):
    """Shell script standing in for the claude binary: echoes its args, then sleeps."""
    bin_dir = git_repo.parent / "bin"
    bin_dir.mkdir()
    script = bin_dir / "fake-claude"
    script.write_text(FAKE_AGENT)
    script.chmod(0o755)
    return script


@pytest.fixture
def config(workflow_repo, fake_agent):
    return Config(repo_path=workflow_repo, agent_binary=str(fake_agent), stop_timeout=3.0)


@pytest.fixture
def ready_task(workflow_repo):
    """Factory for tasks that pass every start precondition (unless told otherwise)."""

    def _make(title="Add login", branch="feature/login", prd=True, **fields):
        rel = tasks_mod.create_task(workflow_repo, title)
        if prd:
            (workflow_repo / rel / "prd.md").write_text("# PRD\n\nDo the thing.\n")
        tasks_mod.update_task(workflow_repo / rel, branch=branch, **fields)
        return rel

    return _make


@pytest.fixture(autouse=True)
def reap_agents():
    """Kill any background agents a test left running."""
    yield
    for pid, proc in list(launcher._active_processes.items()):
        if proc.poll() is None:
            try:
                os.killpg(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            proc.wait(timeout=5)
        launcher._active_processes.pop(pid, None)
