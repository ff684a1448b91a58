"""Wiring: builds the engine, runtime and stores from Settings."""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agentorg.background import BackgroundTasks
from agentorg.bus import InMemoryMessageBus, MessageBus
from agentorg.config import Settings
from agentorg.delegation.engine import DelegationEngine
from agentorg.delegation.models import AgentDefinition
from agentorg.engine.registry import AgentRegistry
from agentorg.engine.runtime import AgentExecutionRuntime
from agentorg.engine.tools import ToolCatalog
from agentorg.logging import get_logger
from agentorg.memory import LearningExtractor, MemoryContext
from agentorg.providers.llm import ModelClient, OpenAICompatibleClient
from agentorg.storage.database import SQLiteStorage
from agentorg.storage.interfaces import AgentStore, ConversationStore, TaskStore

logger = get_logger(__name__)


@dataclass
class Services:
    """Everything an outer surface (CLI, HTTP) needs."""

    settings: Settings
    agents: AgentStore
    tasks: TaskStore
    conversations: ConversationStore
    bus: MessageBus
    background: BackgroundTasks
    registry: AgentRegistry
    engine: DelegationEngine
    runtime: AgentExecutionRuntime


def build_services(
    settings: Settings,
    agents: AgentStore,
    tasks: TaskStore,
    conversations: ConversationStore,
    model: ModelClient,
    bus: MessageBus | None = None,
    catalog: ToolCatalog | None = None,
    memory: MemoryContext | None = None,
    learning: LearningExtractor | None = None,
) -> Services:
    """Assemble the object graph over the given stores and model client."""
    background = BackgroundTasks()
    bus = bus or InMemoryMessageBus()
    registry = AgentRegistry(agents)
    engine = DelegationEngine(agents, tasks, bus, background, depth_mode=settings.depth_mode)
    runtime = AgentExecutionRuntime(
        registry=registry,
        tasks=tasks,
        conversations=conversations,
        delegation=engine,
        model=model,
        memory=memory,
        learning=learning,
        catalog=catalog,
        settings=settings,
        background=background,
    )
    return Services(
        settings=settings,
        agents=agents,
        tasks=tasks,
        conversations=conversations,
        bus=bus,
        background=background,
        registry=registry,
        engine=engine,
        runtime=runtime,
    )


@asynccontextmanager
async def open_services(
    settings: Settings | None = None,
    model: ModelClient | None = None,
    catalog: ToolCatalog | None = None,
) -> AsyncIterator[Services]:
    """
    Open the SQLite stores and yield wired services.

    Background work (bus delivery, learning extraction) is drained before the
    database closes.
    """
    settings = settings or Settings.from_env()
    own_client = model is None
    client = model or OpenAICompatibleClient(
        base_url=settings.model_base_url,
        api_key=settings.model_api_key,
        default_model=settings.default_model,
        timeout=settings.model_timeout,
    )
    try:
        async with SQLiteStorage(settings.db_path) as storage:
            services = build_services(
                settings,
                storage.agents,
                storage.tasks,
                storage.conversations,
                client,
                catalog=catalog,
            )
            try:
                yield services
            finally:
                await services.background.wait()
    finally:
        if own_client and isinstance(client, OpenAICompatibleClient):
            await client.close()


def load_agent_definitions(data: Iterable[Mapping[str, Any]]) -> list[AgentDefinition]:
    """
    Build agent definitions from plain mappings.

    ``parent`` may name the parent agent by slug instead of ``parent_id``.
    Agents without an id get a generated one.
    """
    raw = [dict(item) for item in data]
    for item in raw:
        item.setdefault("id", str(uuid.uuid4()))

    ids_by_slug = {item["slug"]: item["id"] for item in raw if "slug" in item}
    agents = []
    for item in raw:
        parent_slug = item.pop("parent", None)
        if parent_slug and not item.get("parent_id"):
            if parent_slug not in ids_by_slug:
                raise ValueError(f"unknown parent agent: {parent_slug}")
            item["parent_id"] = ids_by_slug[parent_slug]
        agents.append(AgentDefinition.from_dict(item))
    return agents


async def import_agents(store: AgentStore, path: Path) -> list[AgentDefinition]:
    """Load a JSON list of agent definitions from ``path`` and save them."""
    data = json.loads(path.read_text())
    if not isinstance(data, list):
        raise ValueError("agent file must contain a JSON list")

    existing = {a.slug: a.id for a in await store.list_agents(active_only=False)}
    raw = []
    for item in data:
        item = dict(item)
        # Re-importing keeps the stored id so task history stays attached
        if "id" not in item and item.get("slug") in existing:
            item["id"] = existing[item["slug"]]
        raw.append(item)

    agents = load_agent_definitions(raw)
    for agent in agents:
        await store.save(agent)

    logger.info("agents_imported", count=len(agents), path=str(path))
    return agents
