"""In-process store implementations.

Used by tests and by embedders that bring their own persistence. Records are
copied on the way in and out so callers never alias stored state.
"""

from __future__ import annotations

import copy
import itertools

from agentorg.delegation.models import AgentDefinition, ConversationRecord, DelegatedTask


def _task_order(task: DelegatedTask) -> tuple[int, float]:
    return (task.priority, task.created_at.timestamp())


class InMemoryAgentStore:
    def __init__(self, agents: list[AgentDefinition] | None = None) -> None:
        self._by_id: dict[str, AgentDefinition] = {}
        for agent in agents or []:
            self._by_id[agent.id] = copy.deepcopy(agent)

    async def get_by_slug(self, slug: str) -> AgentDefinition | None:
        for agent in self._by_id.values():
            if agent.slug == slug:
                return copy.deepcopy(agent)
        return None

    async def get_by_id(self, agent_id: str) -> AgentDefinition | None:
        agent = self._by_id.get(agent_id)
        return copy.deepcopy(agent) if agent else None

    async def list_active_children(self, parent_id: str) -> list[AgentDefinition]:
        return [
            copy.deepcopy(a)
            for a in self._by_id.values()
            if a.parent_id == parent_id and a.is_active
        ]

    async def list_agents(self, active_only: bool = True) -> list[AgentDefinition]:
        return [
            copy.deepcopy(a) for a in self._by_id.values() if a.is_active or not active_only
        ]

    async def save(self, agent: AgentDefinition) -> None:
        for existing in list(self._by_id.values()):
            if existing.slug == agent.slug and existing.id != agent.id:
                raise ValueError(f"slug already in use: {agent.slug}")
        self._by_id[agent.id] = copy.deepcopy(agent)


class InMemoryTaskStore:
    def __init__(self) -> None:
        self._tasks: dict[str, DelegatedTask] = {}

    async def insert(self, task: DelegatedTask) -> None:
        if task.id in self._tasks:
            raise ValueError(f"task already exists: {task.id}")
        self._tasks[task.id] = copy.deepcopy(task)

    async def update(self, task: DelegatedTask) -> None:
        if task.id not in self._tasks:
            raise KeyError(task.id)
        self._tasks[task.id] = copy.deepcopy(task)

    async def get(self, task_id: str) -> DelegatedTask | None:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task else None

    async def list_by_assignee(
        self, agent_id: str, status: str | None = None
    ) -> list[DelegatedTask]:
        tasks = [
            t
            for t in self._tasks.values()
            if t.assigned_to == agent_id and (status is None or t.status == status)
        ]
        return [copy.deepcopy(t) for t in sorted(tasks, key=_task_order)]

    async def list_all(self, status: str | None = None) -> list[DelegatedTask]:
        tasks = [t for t in self._tasks.values() if status is None or t.status == status]
        return [copy.deepcopy(t) for t in sorted(tasks, key=_task_order)]

    def __len__(self) -> int:
        return len(self._tasks)


class InMemoryConversationStore:
    def __init__(self) -> None:
        self._records: list[ConversationRecord] = []
        self._ids = itertools.count(1)

    async def append(self, record: ConversationRecord) -> ConversationRecord:
        stored = copy.deepcopy(record)
        stored.id = next(self._ids)
        self._records.append(stored)
        return copy.deepcopy(stored)

    async def list_recent(self, agent_id: str, limit: int = 10) -> list[ConversationRecord]:
        mine = [r for r in self._records if r.agent_id == agent_id]
        if limit <= 0:
            return []
        return [copy.deepcopy(r) for r in mine[-limit:]]

    def all_records(self) -> list[ConversationRecord]:
        return [copy.deepcopy(r) for r in self._records]
