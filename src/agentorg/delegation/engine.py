"""
Delegation Engine

Creates, validates and audits delegated tasks, and drives their completion
and failure transitions.

Rules:
- Authorization comes only from the delegator's can_delegate_to list
- Granted permissions/tools are the intersection of what the delegator holds
  and what was requested, snapshotted at creation
- Depth is bounded by the delegator's max_delegation_depth
- A rejected delegation creates no task row
- Tasks are never deleted; every hop stays in the audit trail
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from agentorg.background import BackgroundTasks
from agentorg.bus import MessageBus
from agentorg.errors import InvalidTransitionError, NotFoundError
from agentorg.logging import get_logger
from agentorg.storage.interfaces import AgentStore, TaskStore

from .attenuation import attenuate
from .models import (
    DEFAULT_PRIORITY,
    DELIVERABLE_TYPES,
    MAX_PRIORITY,
    MIN_PRIORITY,
    USER_PRINCIPAL,
    AgentDefinition,
    DelegatedTask,
    DelegationRequest,
    DelegationResult,
    TaskStatus,
    new_task_id,
    utcnow,
)
from .validator import validate_delegation

logger = get_logger(__name__)

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED.value, TaskStatus.FAILED.value})


def clamp_priority(priority: int | None) -> int:
    if priority is None:
        return DEFAULT_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))


def agent_depth(chain: Iterable[str]) -> int:
    """Hops below the first agent in a chain; the user sentinel does not count."""
    agents_only = [p for p in chain if p != USER_PRINCIPAL]
    return max(len(agents_only) - 1, 0)


class DelegationEngine:
    """
    Hierarchical task delegation with privilege attenuation.

    depth_mode controls how chains are accounted when an agent that is itself
    running a delegated task delegates again:
    - "transitive": the new task extends the parent task's chain and the
      delegator's capabilities are capped by the parent task's grants
    - "per_hop": every hop starts a fresh chain at the delegator; capabilities
      are still capped by the parent task's grants
    """

    def __init__(
        self,
        agents: AgentStore,
        tasks: TaskStore,
        bus: MessageBus,
        background: BackgroundTasks | None = None,
        depth_mode: str = "transitive",
    ) -> None:
        self.agents = agents
        self.tasks = tasks
        self.bus = bus
        self.background = background or BackgroundTasks()
        self.depth_mode = depth_mode

    # ── CREATION ────────────────────────────────────────────────────────

    async def delegate_task(self, request: DelegationRequest) -> DelegationResult:
        """Delegate a task from one agent to another."""
        from_agent, to_agent = await asyncio.gather(
            self.agents.get_by_id(request.from_agent_id),
            self.agents.get_by_slug(request.to_agent_slug),
        )

        if from_agent is None:
            return self._rejected(request, f"Delegating agent not found: {request.from_agent_id}")
        if to_agent is None:
            return self._rejected(request, f"Target agent not found: {request.to_agent_slug}")
        if not to_agent.is_active:
            return self._rejected(request, f'Target agent "{request.to_agent_slug}" is inactive')

        scope = await self._resolve_scope(request, from_agent)
        if isinstance(scope, DelegationResult):
            return scope
        existing_chain, held_permissions, held_tools = scope
        current_depth = agent_depth(existing_chain)

        validation = validate_delegation(from_agent, to_agent, current_depth, existing_chain)
        if not validation.valid:
            logger.warning(
                "delegation_rejected",
                from_agent=from_agent.slug,
                to_agent=to_agent.slug,
                depth=current_depth,
                reason=validation.reason,
            )
            return DelegationResult(error=validation.reason)

        task = DelegatedTask(
            id=new_task_id(),
            title=request.title,
            description=request.description or "",
            assigned_by=from_agent.id,
            assigned_to=to_agent.id,
            delegation_chain=[*existing_chain, to_agent.id],
            depth=current_depth + 1,
            priority=clamp_priority(request.priority),
            granted_permissions=attenuate(held_permissions, request.required_permissions),
            granted_tools=attenuate(held_tools, request.required_tools),
            deadline=request.deadline,
        )
        await self.tasks.insert(task)

        logger.info(
            "task_delegated",
            task_id=task.id,
            from_agent=from_agent.slug,
            to_agent=to_agent.slug,
            depth=task.depth,
            permissions=sorted(task.granted_permissions),
            tools=sorted(task.granted_tools),
        )
        self._notify_delegation(from_agent.id, to_agent.id, task)
        return DelegationResult(task_id=task.id)

    async def delegate_from_user(
        self,
        to_agent_slug: str,
        title: str,
        description: str = "",
        priority: int | None = None,
        deadline: datetime | None = None,
    ) -> DelegationResult:
        """
        Delegate from the human user.

        The user implicitly holds every capability, so validation is skipped
        and the target receives its own full permission and tool sets.
        """
        to_agent = await self.agents.get_by_slug(to_agent_slug)
        if to_agent is None:
            return DelegationResult(error=f"Agent not found: {to_agent_slug}")
        if not to_agent.is_active:
            return DelegationResult(error=f'Agent "{to_agent_slug}" is inactive')

        task = DelegatedTask(
            id=new_task_id(),
            title=title,
            description=description or "",
            assigned_by=USER_PRINCIPAL,
            assigned_to=to_agent.id,
            delegation_chain=[USER_PRINCIPAL, to_agent.id],
            depth=0,
            priority=clamp_priority(priority),
            granted_permissions=to_agent.action_permissions,
            granted_tools=to_agent.available_tools,
            deadline=deadline,
        )
        await self.tasks.insert(task)

        logger.info("task_delegated_from_user", task_id=task.id, to_agent=to_agent.slug)
        self._notify_delegation(USER_PRINCIPAL, to_agent.id, task)
        return DelegationResult(task_id=task.id)

    # ── TRANSITIONS ─────────────────────────────────────────────────────

    async def start_delegation(self, task_id: str) -> DelegatedTask | None:
        """Move a pending task to in_progress. Returns None if it is not pending."""
        task = await self.tasks.get(task_id)
        if task is None:
            logger.error("delegation_task_not_found", task_id=task_id)
            return None
        if task.status != TaskStatus.PENDING.value:
            logger.warning("delegation_not_pending", task_id=task_id, status=task.status)
            return None

        task.status = TaskStatus.IN_PROGRESS.value
        task.started_at = utcnow()
        await self.tasks.update(task)
        return task

    async def complete_delegation(self, task_id: str, result: dict[str, Any] | None) -> None:
        """
        Record a task result and send it back to the delegator.

        Results typed as a deliverable (document, recommendation, action_items,
        code) go to needs_review instead of completed.
        """
        task = await self.tasks.get(task_id)
        if task is None:
            logger.error("delegation_task_not_found", task_id=task_id)
            return
        if task.status in TERMINAL_STATUSES:
            logger.warning("delegation_already_closed", task_id=task_id, status=task.status)
            return

        result = result or {}
        result_type = result.get("type")
        is_deliverable = isinstance(result_type, str) and result_type in DELIVERABLE_TYPES

        task.result = result
        if is_deliverable:
            task.status = TaskStatus.NEEDS_REVIEW.value
            task.deliverable_type = result_type
        else:
            task.status = TaskStatus.COMPLETED.value
            task.completed_at = utcnow()
        await self.tasks.update(task)

        logger.info(
            "delegation_routed_to_review" if is_deliverable else "delegation_completed",
            task_id=task_id,
            assigned_to=task.assigned_to,
            assigned_by=task.assigned_by,
        )
        self._notify_result(task, json.dumps(result, default=str))

    async def fail_delegation(self, task_id: str, error_message: str) -> None:
        """Mark a task failed and forward the error to the delegator."""
        task = await self.tasks.get(task_id)
        if task is None:
            logger.error("delegation_task_not_found", task_id=task_id)
            return
        if task.status in TERMINAL_STATUSES:
            logger.warning("delegation_already_closed", task_id=task_id, status=task.status)
            return

        task.status = TaskStatus.FAILED.value
        task.error = error_message
        task.completed_at = utcnow()
        await self.tasks.update(task)

        logger.warning("delegation_failed", task_id=task_id, error=error_message)
        self._notify_result(task, json.dumps({"error": error_message}))

    # ── REVIEW GATE ─────────────────────────────────────────────────────

    async def approve_deliverable(self, task_id: str, feedback: str | None = None) -> DelegatedTask:
        """Accept a deliverable awaiting review. The task becomes completed."""
        task = await self._awaiting_review(task_id, "approve")
        task.status = TaskStatus.COMPLETED.value
        task.review_feedback = feedback or None
        task.completed_at = utcnow()
        await self.tasks.update(task)

        logger.info("deliverable_approved", task_id=task_id, deliverable_type=task.deliverable_type)
        self._notify_result(task, json.dumps({"review": "approved", "feedback": task.review_feedback}))
        return task

    async def reject_deliverable(self, task_id: str, feedback: str | None = None) -> DelegatedTask:
        """Turn a deliverable down. The task becomes failed."""
        task = await self._awaiting_review(task_id, "reject")
        task.status = TaskStatus.FAILED.value
        task.review_feedback = feedback or "Rejected"
        task.error = f"Deliverable rejected: {task.review_feedback}"
        task.completed_at = utcnow()
        await self.tasks.update(task)

        logger.info("deliverable_rejected", task_id=task_id, feedback=task.review_feedback)
        self._notify_result(task, json.dumps({"review": "rejected", "feedback": task.review_feedback}))
        return task

    async def request_changes(self, task_id: str, feedback: str) -> DelegatedTask:
        """Send a deliverable back to its agent. The task is pending again."""
        if not feedback or not feedback.strip():
            raise ValueError("feedback is required when requesting changes")
        task = await self._awaiting_review(task_id, "request changes on")
        task.status = TaskStatus.PENDING.value
        task.review_feedback = feedback
        await self.tasks.update(task)

        logger.info("deliverable_changes_requested", task_id=task_id)
        self._notify_delegation(task.assigned_by, task.assigned_to, task)
        return task

    # ── QUERIES ─────────────────────────────────────────────────────────

    async def get_pending_delegations(self, agent_id: str) -> list[DelegatedTask]:
        """Pending tasks for an agent, highest priority (lowest number) first."""
        return await self.tasks.list_by_assignee(agent_id, status=TaskStatus.PENDING.value)

    async def get_delegation_chain(self, task_id: str) -> list[DelegatedTask]:
        """Every task sharing an agent participant with the given task's chain."""
        task = await self.tasks.get(task_id)
        if task is None:
            return []

        participants = {p for p in task.delegation_chain if p != USER_PRINCIPAL}
        if not participants:
            return [task]

        related = [
            t
            for t in await self.tasks.list_all()
            if participants.intersection(t.delegation_chain)
        ]
        return sorted(related, key=lambda t: (t.depth, t.created_at))

    # ── INTERNALS ───────────────────────────────────────────────────────

    async def _resolve_scope(
        self, request: DelegationRequest, from_agent: AgentDefinition
    ) -> tuple[list[str], frozenset[str], frozenset[str]] | DelegationResult:
        """Existing chain and the capabilities the delegator holds for this hop."""
        if not request.parent_task_id:
            return [from_agent.id], from_agent.action_permissions, from_agent.available_tools

        parent = await self.tasks.get(request.parent_task_id)
        if parent is None:
            return self._rejected(request, f"Parent task not found: {request.parent_task_id}")
        if parent.assigned_to != from_agent.id:
            return self._rejected(
                request,
                f"Parent task {parent.id} is not assigned to agent {from_agent.slug}",
            )

        # Both modes cap held capabilities by the parent grants; only the chain differs
        chain = [from_agent.id] if self.depth_mode == "per_hop" else list(parent.delegation_chain)
        return (
            chain,
            from_agent.action_permissions & parent.granted_permissions,
            from_agent.available_tools & parent.granted_tools,
        )

    async def _awaiting_review(self, task_id: str, action: str) -> DelegatedTask:
        task = await self.tasks.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        if task.status != TaskStatus.NEEDS_REVIEW.value:
            raise InvalidTransitionError(task_id, task.status, action)
        return task

    def _rejected(self, request: DelegationRequest, message: str) -> DelegationResult:
        logger.warning(
            "delegation_rejected",
            from_agent_id=request.from_agent_id,
            to_agent=request.to_agent_slug,
            reason=message,
        )
        return DelegationResult(error=message)

    def _notify_delegation(self, from_id: str, to_id: str, task: DelegatedTask) -> None:
        text = f"Task: {task.title}\n\n{task.description}"

        async def send() -> None:
            await self.bus.send_delegation(from_id, to_id, task.id, text)

        self.background.spawn(
            send(),
            "bus_delivery_failed",
            kind="delegation",
            task_id=task.id,
        )

    def _notify_result(self, task: DelegatedTask, text: str) -> None:
        async def send() -> None:
            await self.bus.send_result(task.assigned_to, task.assigned_by, task.id, text)

        self.background.spawn(
            send(),
            "bus_delivery_failed",
            kind="result",
            task_id=task.id,
        )
