"""
Delegation Data Models

Core dataclasses for the agent hierarchy: agent definitions, delegated tasks,
conversation records and the structured results returned by the runtime.

Two relations live on AgentDefinition and must stay distinct:
- parent_id: the org-chart tree, used for reporting only
- can_delegate_to: the authorization graph, the only input to delegation checks
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

# Sentinel principal for tasks handed down by the human user
USER_PRINCIPAL = "user"

# Result types that must pass human review instead of auto-completing
DELIVERABLE_TYPES: frozenset[str] = frozenset({"document", "recommendation", "action_items", "code"})

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:12]}"


def _as_frozenset(values: Iterable[str] | None) -> frozenset[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        raise TypeError("expected a collection of strings, got a single string")
    return frozenset(values)


class AgentRole(StrEnum):
    """Organizational label. Carries no authority."""

    EXECUTIVE = "executive"
    MANAGER = "manager"
    SPECIALIST = "specialist"
    WORKER = "worker"


class TaskStatus(StrEnum):
    """Delegated task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"


class ConversationRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    DELEGATION = "delegation"


@dataclass
class AgentDefinition:
    """An agent in the hierarchy."""

    id: str
    slug: str
    name: str = ""
    role: str = AgentRole.WORKER.value
    parent_id: str | None = None
    soul: str = ""
    available_tools: frozenset[str] = field(default_factory=frozenset)
    action_permissions: frozenset[str] = field(default_factory=lambda: frozenset({"read"}))
    can_delegate_to: frozenset[str] = field(default_factory=frozenset)
    max_delegation_depth: int = 2
    model_tier: str = "auto"
    temperature: float | None = None
    max_tokens: int | None = None
    max_context_tokens: int | None = None
    is_active: bool = True

    def __post_init__(self) -> None:
        if not self.slug:
            raise ValueError("slug must not be empty")
        if self.role not in {r.value for r in AgentRole}:
            raise ValueError(f"role must be one of {[r.value for r in AgentRole]}, got {self.role!r}")
        if self.max_delegation_depth < 0:
            raise ValueError(
                f"max_delegation_depth must be >= 0, got {self.max_delegation_depth}"
            )
        self.available_tools = _as_frozenset(self.available_tools)
        self.action_permissions = _as_frozenset(self.action_permissions)
        self.can_delegate_to = _as_frozenset(self.can_delegate_to)

    @property
    def display_name(self) -> str:
        return self.name or self.slug

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "role": self.role,
            "parent_id": self.parent_id,
            "soul": self.soul,
            "available_tools": sorted(self.available_tools),
            "action_permissions": sorted(self.action_permissions),
            "can_delegate_to": sorted(self.can_delegate_to),
            "max_delegation_depth": self.max_delegation_depth,
            "model_tier": self.model_tier,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "max_context_tokens": self.max_context_tokens,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentDefinition:
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class DelegatedTask:
    """
    A unit of work handed from one principal to an agent.

    granted_permissions / granted_tools are a snapshot taken at creation and
    are never re-derived from the delegator afterwards.
    """

    id: str
    title: str
    assigned_by: str
    assigned_to: str
    delegation_chain: list[str]
    depth: int
    description: str = ""
    status: str = TaskStatus.PENDING.value
    priority: int = DEFAULT_PRIORITY
    granted_permissions: frozenset[str] = field(default_factory=frozenset)
    granted_tools: frozenset[str] = field(default_factory=frozenset)
    result: dict[str, Any] | None = None
    deliverable_type: str | None = None
    error: str | None = None
    review_feedback: str | None = None
    deadline: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        if len(set(self.delegation_chain)) != len(self.delegation_chain):
            raise ValueError(f"delegation_chain contains duplicates: {self.delegation_chain}")
        if not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise ValueError(
                f"priority must be in [{MIN_PRIORITY}, {MAX_PRIORITY}], got {self.priority}"
            )
        if self.status not in {s.value for s in TaskStatus}:
            raise ValueError(f"unknown task status {self.status!r}")
        self.granted_permissions = _as_frozenset(self.granted_permissions)
        self.granted_tools = _as_frozenset(self.granted_tools)

    @property
    def from_user(self) -> bool:
        return self.assigned_by == USER_PRINCIPAL

    def to_dict(self) -> dict[str, Any]:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "assigned_by": self.assigned_by,
            "assigned_to": self.assigned_to,
            "delegation_chain": list(self.delegation_chain),
            "depth": self.depth,
            "status": self.status,
            "priority": self.priority,
            "granted_permissions": sorted(self.granted_permissions),
            "granted_tools": sorted(self.granted_tools),
            "result": self.result,
            "deliverable_type": self.deliverable_type,
            "error": self.error,
            "review_feedback": self.review_feedback,
            "deadline": iso(self.deadline),
            "created_at": iso(self.created_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
        }


@dataclass
class DelegationRequest:
    """Agent-to-agent delegation request."""

    from_agent_id: str
    to_agent_slug: str
    title: str
    description: str = ""
    priority: int | None = None
    required_permissions: Iterable[str] | None = None
    required_tools: Iterable[str] | None = None
    deadline: datetime | None = None
    # Task the delegating agent is itself working on, if any
    parent_task_id: str | None = None


@dataclass
class DelegationResult:
    """Outcome of a delegation attempt. Exactly one of task_id/error is set."""

    task_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.task_id is not None and self.error is None

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"task_id": self.task_id}
        return {"error": self.error}


@dataclass
class DelegationContext:
    """Scope an agent runs under while executing a delegated task."""

    task: DelegatedTask
    parent_agent: AgentDefinition | None
    delegation_chain: list[str]
    granted_permissions: frozenset[str]
    granted_tools: frozenset[str]
    depth: int

    @classmethod
    def for_task(cls, task: DelegatedTask, parent_agent: AgentDefinition | None) -> DelegationContext:
        return cls(
            task=task,
            parent_agent=parent_agent,
            delegation_chain=list(task.delegation_chain),
            granted_permissions=task.granted_permissions,
            granted_tools=task.granted_tools,
            depth=task.depth,
        )

    @property
    def delegator_name(self) -> str:
        if self.parent_agent is None:
            return "the user"
        return self.parent_agent.display_name


@dataclass
class ActionRecord:
    """Side effect performed by a tool during a turn. Not persisted on its own."""

    action_type: str
    entity_type: str | None = None
    entity_id: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    status: str = "success"  # success, failed
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_type": self.action_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "parameters": self.parameters,
            "status": self.status,
            "error_message": self.error_message,
        }


@dataclass
class DelegationRecord:
    """Delegation issued during a turn."""

    task_id: str
    to_agent_slug: str
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "to_agent_slug": self.to_agent_slug, "status": self.status}


@dataclass
class ConversationRecord:
    """Append-only conversation entry for one agent."""

    agent_id: str
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None


@dataclass
class ChatResult:
    """Structured outcome of one agent invocation."""

    response: str
    agent_id: str
    agent_slug: str
    actions: list[ActionRecord] = field(default_factory=list)
    delegations: list[DelegationRecord] = field(default_factory=list)
    tokens_used: int = 0
    model: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": self.response,
            "agent_id": self.agent_id,
            "agent_slug": self.agent_slug,
            "actions": [a.to_dict() for a in self.actions],
            "delegations": [d.to_dict() for d in self.delegations],
            "tokens_used": self.tokens_used,
            "model": self.model,
        }
