"""Repository interfaces consumed by the delegation engine and runtime."""

from __future__ import annotations

from typing import Protocol

from agentorg.delegation.models import AgentDefinition, ConversationRecord, DelegatedTask


class AgentStore(Protocol):
    async def get_by_slug(self, slug: str) -> AgentDefinition | None: ...

    async def get_by_id(self, agent_id: str) -> AgentDefinition | None: ...

    async def list_active_children(self, parent_id: str) -> list[AgentDefinition]: ...

    async def list_agents(self, active_only: bool = True) -> list[AgentDefinition]: ...

    async def save(self, agent: AgentDefinition) -> None: ...


class TaskStore(Protocol):
    async def insert(self, task: DelegatedTask) -> None: ...

    async def update(self, task: DelegatedTask) -> None: ...

    async def get(self, task_id: str) -> DelegatedTask | None: ...

    async def list_by_assignee(
        self, agent_id: str, status: str | None = None
    ) -> list[DelegatedTask]:
        """Tasks for an assignee ordered by priority, then creation time."""
        ...

    async def list_all(self, status: str | None = None) -> list[DelegatedTask]: ...


class ConversationStore(Protocol):
    async def append(self, record: ConversationRecord) -> ConversationRecord: ...

    async def list_recent(self, agent_id: str, limit: int = 10) -> list[ConversationRecord]:
        """Most recent records for an agent, returned oldest first."""
        ...
