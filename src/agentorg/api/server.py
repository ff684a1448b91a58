"""FastAPI server for programmatic agentorg access."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import click
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from agentorg import __version__
from agentorg.delegation.models import MAX_PRIORITY, MIN_PRIORITY, TaskStatus
from agentorg.errors import (
    InactiveAgentError,
    InvalidTransitionError,
    ModelCallError,
    NotFoundError,
)
from agentorg.logging import get_logger, setup_logging
from agentorg.services import Services, open_services

logger = get_logger(__name__)

_start_time = time.monotonic()

router = APIRouter(prefix="/api")


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="services not initialized")
    return services


async def _require_agent(services: Services, slug: str) -> Any:
    agent = await services.registry.get(slug)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"Agent not found: {slug}")
    return agent


@router.get("/health")
async def health() -> dict[str, Any]:
    """Health check."""
    uptime = time.monotonic() - _start_time
    return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}


@router.get("/agents")
async def list_agents(services: Services = Depends(get_services)) -> dict[str, Any]:
    """Active agents in org-chart order."""
    agents = await services.registry.list_active()
    return {"agents": [a.to_dict() for a in agents], "count": len(agents)}


@router.post("/agents/{slug}/chat")
async def chat(
    slug: str, body: dict[str, Any], services: Services = Depends(get_services)
) -> dict[str, Any]:
    """Run one chat turn against an agent."""
    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        raise HTTPException(status_code=400, detail="message is required")

    try:
        result = await services.runtime.execute_agent_chat(
            slug, message, str(body.get("user_id") or "api")
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InactiveAgentError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ModelCallError as exc:
        logger.error("chat_model_call_failed", agent_slug=slug, error=str(exc))
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return result.to_dict()


@router.post("/agents/{slug}/tasks", status_code=201)
async def create_task(
    slug: str, body: dict[str, Any], services: Services = Depends(get_services)
) -> dict[str, Any]:
    """Delegate a task to an agent as the user. ``run: true`` executes it immediately."""
    title = body.get("title")
    if not isinstance(title, str) or not title.strip():
        raise HTTPException(status_code=400, detail="title is required")
    priority = body.get("priority")
    if priority is not None and (
        not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY
    ):
        raise HTTPException(
            status_code=400,
            detail=f"priority must be an integer in [{MIN_PRIORITY}, {MAX_PRIORITY}]",
        )

    agent = await _require_agent(services, slug)
    if not agent.is_active:
        raise HTTPException(status_code=409, detail=f'Agent "{slug}" is inactive')

    outcome = await services.engine.delegate_from_user(
        slug, title, str(body.get("description") or ""), priority
    )
    task_id = outcome.task_id
    if task_id is None:
        raise HTTPException(status_code=409, detail=outcome.error)

    response: dict[str, Any] = {"task_id": task_id}
    if body.get("run"):
        result = await services.runtime.execute_agent_task(task_id)
        response["result"] = result.to_dict() if result else None
    task = await services.tasks.get(task_id)
    response["task"] = task.to_dict() if task else None
    return response


@router.get("/agents/{slug}/tasks")
async def agent_tasks(
    slug: str, status: str | None = None, services: Services = Depends(get_services)
) -> dict[str, Any]:
    """Tasks assigned to an agent, highest priority first."""
    if status is not None and status not in {s.value for s in TaskStatus}:
        raise HTTPException(status_code=400, detail=f"unknown status: {status}")
    agent = await _require_agent(services, slug)
    found = await services.tasks.list_by_assignee(agent.id, status=status)
    return {"tasks": [t.to_dict() for t in found], "count": len(found)}


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    task = await services.tasks.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    return task.to_dict()


@router.post("/tasks/{task_id}/run")
async def run_task(task_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Execute a pending task."""
    task = await services.tasks.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    if task.status != TaskStatus.PENDING.value:
        raise HTTPException(status_code=409, detail=f"Task {task_id} is {task.status}")

    result = await services.runtime.execute_agent_task(task_id)
    task = await services.tasks.get(task_id)
    return {
        "result": result.to_dict() if result else None,
        "task": task.to_dict() if task else None,
    }


@router.get("/tasks/{task_id}/chain")
async def task_chain(task_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Every task sharing an agent with this task's delegation chain."""
    related = await services.engine.get_delegation_chain(task_id)
    if not related:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    return {"tasks": [t.to_dict() for t in related], "count": len(related)}


def _review_feedback(body: dict[str, Any] | None) -> str | None:
    feedback = (body or {}).get("feedback")
    if feedback is not None and not isinstance(feedback, str):
        raise HTTPException(status_code=400, detail="feedback must be a string")
    return feedback


@router.post("/tasks/{task_id}/approve")
async def approve_task(
    task_id: str,
    body: dict[str, Any] | None = None,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Approve a deliverable awaiting review."""
    feedback = _review_feedback(body)
    try:
        task = await services.engine.approve_deliverable(task_id, feedback)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return task.to_dict()


@router.post("/tasks/{task_id}/reject")
async def reject_task(
    task_id: str,
    body: dict[str, Any] | None = None,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Reject a deliverable awaiting review."""
    feedback = _review_feedback(body)
    try:
        task = await services.engine.reject_deliverable(task_id, feedback)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return task.to_dict()


@router.post("/tasks/{task_id}/request-changes")
async def request_task_changes(
    task_id: str, body: dict[str, Any], services: Services = Depends(get_services)
) -> dict[str, Any]:
    """Send a deliverable back to its agent with feedback."""
    feedback = _review_feedback(body)
    if not feedback or not feedback.strip():
        raise HTTPException(status_code=400, detail="feedback is required")
    try:
        task = await services.engine.request_changes(task_id, feedback)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return task.to_dict()


def create_app(services: Services | None = None) -> FastAPI:
    """
    Build the API app.

    With ``services`` given the app uses them as-is; otherwise SQLite-backed
    services are opened from the environment for the app's lifetime.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "services", None) is not None:
            yield
            return
        async with open_services() as opened:
            app.state.services = opened
            yield
        app.state.services = None

    app = FastAPI(
        title="agentorg API",
        version=__version__,
        description="Hierarchical delegation and agent execution API",
        lifespan=lifespan,
    )
    app.state.services = services
    app.include_router(router)
    return app


app = create_app()


@click.command()
@click.option("--port", default=3848, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def main(port: int, host: str) -> None:
    """Start the agentorg API server."""
    import uvicorn

    from agentorg.config import Settings

    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_format)
    uvicorn.run(app, host=host, port=port)
