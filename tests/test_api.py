"""Tests for the FastAPI server."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

from agentorg.api.server import create_app
from agentorg.errors import ModelCallError
from agentorg.services import Services

from conftest import ScriptedModelClient, reply

pytestmark = pytest.mark.anyio


@pytest.fixture
async def client(services: Services) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=create_app(services))
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "version" in data
    assert "uptime_seconds" in data


async def test_services_not_initialized() -> None:
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        response = await http.get("/api/agents")
    assert response.status_code == 503


async def test_list_agents(client: AsyncClient) -> None:
    response = await client.get("/api/agents")
    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 5
    assert data["agents"][0]["slug"] == "ceo"


# ═══════════════════════════════════════════════════════════════════════════
# Chat
# ═══════════════════════════════════════════════════════════════════════════


async def test_chat(client: AsyncClient, model: ScriptedModelClient) -> None:
    model.script = [reply("Campaign plan ready.")]
    response = await client.post("/api/agents/cmo/chat", json={"message": "Plan Q3"})
    assert response.status_code == 200
    data = response.json()
    assert data["response"] == "Campaign plan ready."
    assert data["agent_slug"] == "cmo"
    assert data["tokens_used"] == 10


async def test_chat_requires_message(client: AsyncClient) -> None:
    response = await client.post("/api/agents/cmo/chat", json={"message": "  "})
    assert response.status_code == 400


async def test_chat_unknown_agent(client: AsyncClient) -> None:
    response = await client.post("/api/agents/ghost/chat", json={"message": "hi"})
    assert response.status_code == 404


async def test_chat_inactive_agent(client: AsyncClient, services: Services) -> None:
    cfo = await services.agents.get_by_slug("cfo")
    cfo.is_active = False
    await services.agents.save(cfo)
    response = await client.post("/api/agents/cfo/chat", json={"message": "hi"})
    assert response.status_code == 409


async def test_chat_model_failure(client: AsyncClient, model: ScriptedModelClient) -> None:
    model.script = [ModelCallError("endpoint down")]
    response = await client.post("/api/agents/cmo/chat", json={"message": "hi"})
    assert response.status_code == 502
    assert "endpoint down" in response.json()["detail"]


# ═══════════════════════════════════════════════════════════════════════════
# Tasks
# ═══════════════════════════════════════════════════════════════════════════


async def test_create_task(client: AsyncClient) -> None:
    response = await client.post(
        "/api/agents/cfo/tasks", json={"title": "Q3 budget", "priority": 2}
    )
    assert response.status_code == 201
    data = response.json()
    assert data["task"]["status"] == "pending"
    assert data["task"]["assigned_by"] == "user"
    assert data["task"]["priority"] == 2
    assert "result" not in data


async def test_create_and_run_task(client: AsyncClient, model: ScriptedModelClient) -> None:
    model.script = [reply("Budget drafted.")]
    response = await client.post(
        "/api/agents/cfo/tasks", json={"title": "Q3 budget", "run": True}
    )
    assert response.status_code == 201
    data = response.json()
    assert data["result"]["response"] == "Budget drafted."
    assert data["task"]["status"] == "completed"
    assert data["task"]["result"]["response"] == "Budget drafted."


@pytest.mark.parametrize(
    ("slug", "body", "status"),
    [
        ("cfo", {"description": "no title"}, 400),
        ("cfo", {"title": "x", "priority": 11}, 400),
        ("cfo", {"title": "x", "priority": "high"}, 400),
        ("ghost", {"title": "x"}, 404),
    ],
)
async def test_create_task_errors(
    client: AsyncClient, slug: str, body: dict, status: int
) -> None:
    response = await client.post(f"/api/agents/{slug}/tasks", json=body)
    assert response.status_code == status


async def test_agent_tasks(client: AsyncClient, services: Services) -> None:
    await services.engine.delegate_from_user("cfo", "Low", priority=9)
    await services.engine.delegate_from_user("cfo", "High", priority=1)

    response = await client.get("/api/agents/cfo/tasks", params={"status": "pending"})
    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 2
    assert [t["title"] for t in data["tasks"]] == ["High", "Low"]

    response = await client.get("/api/agents/cfo/tasks", params={"status": "done"})
    assert response.status_code == 400


async def test_get_task(client: AsyncClient, services: Services) -> None:
    outcome = await services.engine.delegate_from_user("cmo", "Launch")
    response = await client.get(f"/api/tasks/{outcome.task_id}")
    assert response.status_code == 200
    assert response.json()["title"] == "Launch"

    response = await client.get("/api/tasks/task-missing")
    assert response.status_code == 404


async def test_run_task(
    client: AsyncClient, services: Services, model: ScriptedModelClient
) -> None:
    model.script = [reply("Launched.")]
    outcome = await services.engine.delegate_from_user("cmo", "Launch")

    response = await client.post(f"/api/tasks/{outcome.task_id}/run")
    assert response.status_code == 200
    assert response.json()["task"]["status"] == "completed"

    response = await client.post(f"/api/tasks/{outcome.task_id}/run")
    assert response.status_code == 409


async def test_task_chain(client: AsyncClient, services: Services) -> None:
    root = await services.engine.delegate_from_user("ceo", "Strategy")
    await services.engine.delegate_from_user("cfo", "Unrelated")

    response = await client.get(f"/api/tasks/{root.task_id}/chain")
    assert response.status_code == 200
    assert [t["title"] for t in response.json()["tasks"]] == ["Strategy"]

    response = await client.get("/api/tasks/task-missing/chain")
    assert response.status_code == 404


async def awaiting_review(services: Services, title: str = "Launch post") -> str:
    outcome = await services.engine.delegate_from_user("cmo", title)
    await services.engine.complete_delegation(outcome.task_id, {"type": "document", "body": "..."})
    return outcome.task_id


async def test_approve_task(client: AsyncClient, services: Services) -> None:
    task_id = await awaiting_review(services)

    response = await client.post(f"/api/tasks/{task_id}/approve", json={"feedback": "Great"})
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["review_feedback"] == "Great"
    assert data["completed_at"] is not None

    response = await client.post(f"/api/tasks/{task_id}/approve")
    assert response.status_code == 409


async def test_reject_task(client: AsyncClient, services: Services) -> None:
    task_id = await awaiting_review(services)

    response = await client.post(f"/api/tasks/{task_id}/reject")
    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["review_feedback"] == "Rejected"


async def test_request_changes(client: AsyncClient, services: Services) -> None:
    task_id = await awaiting_review(services)

    response = await client.post(f"/api/tasks/{task_id}/request-changes", json={})
    assert response.status_code == 400

    response = await client.post(
        f"/api/tasks/{task_id}/request-changes", json={"feedback": "Shorter"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "pending"


async def test_review_errors(client: AsyncClient, services: Services) -> None:
    response = await client.post("/api/tasks/task-missing/approve")
    assert response.status_code == 404

    pending = await services.engine.delegate_from_user("cmo", "Draft")
    response = await client.post(f"/api/tasks/{pending.task_id}/reject", json={"feedback": "No"})
    assert response.status_code == 409

    task_id = await awaiting_review(services)
    response = await client.post(f"/api/tasks/{task_id}/approve", json={"feedback": 5})
    assert response.status_code == 400
