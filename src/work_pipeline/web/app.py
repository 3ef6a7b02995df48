"""Read-only JSON status API for the work pipeline."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from work_pipeline.config import get_config
from work_pipeline.core import pipeline as pipeline_mod
from work_pipeline.core import registry as registry_mod
from work_pipeline.core import tasks as tasks_mod
from work_pipeline.core import worktrees as worktrees_mod
from work_pipeline.core.errors import AgentNotFoundError, PipelineError
from work_pipeline.core.paths import get_registry_path, get_repo_root, require_developer
from work_pipeline.integrations.git import GitError


def _repo():
    config = get_config()
    return config.repo_path or get_repo_root(), config


def _error(e: Exception, status_code: int = 400) -> JSONResponse:
    d = {"error": str(e)}
    if isinstance(e, PipelineError) and e.hint:
        d["hint"] = e.hint
    return JSONResponse(d, status_code=status_code)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_agents(request: Request):
    repo, config = _repo()
    try:
        statuses = pipeline_mod.list_statuses(repo, config)
    except PipelineError as e:
        return _error(e)
    return JSONResponse([s.to_dict() for s in statuses])


async def api_get_agent(request: Request):
    agent_id = request.path_params["agent_id"]
    repo, config = _repo()
    try:
        status = pipeline_mod.get_status(repo, agent_id, config)
    except AgentNotFoundError as e:
        return _error(e, status_code=404)
    except PipelineError as e:
        return _error(e)
    return JSONResponse(status.to_dict())


async def api_registry(request: Request):
    repo, config = _repo()
    try:
        path = get_registry_path(repo, require_developer(repo, config.developer))
    except PipelineError as e:
        return _error(e)
    return JSONResponse(registry_mod.read_registry(path).to_dict())


async def api_list_tasks(request: Request):
    repo, _ = _repo()
    status_filter = request.query_params.get("status")
    tasks = tasks_mod.list_tasks(repo, status=status_filter)
    return JSONResponse([{**t.to_dict(), "dir": p.name} for t, p in tasks])


async def api_get_task(request: Request):
    name = request.path_params["name"]
    repo, _ = _repo()
    found = tasks_mod.find_task(repo, name)
    if not found:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    task, path = found
    return JSONResponse({**task.to_dict(), "dir": path.name})


async def api_list_worktrees(request: Request):
    repo, _ = _repo()
    try:
        return JSONResponse(worktrees_mod.list_worktrees(repo))
    except GitError as e:
        return _error(e, status_code=500)


def create_app() -> Starlette:
    routes = [
        Route("/api/agents", api_list_agents),
        Route("/api/agents/{agent_id}", api_get_agent),
        Route("/api/registry", api_registry),
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{name}", api_get_task),
        Route("/api/worktrees", api_list_worktrees),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
