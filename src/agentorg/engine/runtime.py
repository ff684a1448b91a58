"""
Agent Execution Runtime

Bounded multi-turn tool-calling loop shared by direct chat and delegated-task
execution.

Flow:
1. Resolve the agent (and, for tasks, the task and its delegator)
2. Assemble context: soul, delegation banner, team roster, memory
3. Filter the tool catalog by available tools and effective permissions
4. MODEL_CALL -> (TOOL_DISPATCH -> MODEL_CALL)* -> FINALIZE, at most
   ``max_turns`` model calls
5. Persist the turn and return a ChatResult

A tool failure is turned into a tool-result string and the loop continues.
A model failure aborts the invocation: direct chat re-raises it, delegated
tasks are marked failed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agentorg.background import BackgroundTasks
from agentorg.config import Settings
from agentorg.delegation.engine import DelegationEngine
from agentorg.delegation.models import (
    ActionRecord,
    AgentDefinition,
    ChatResult,
    ConversationRecord,
    ConversationRole,
    DelegatedTask,
    DelegationContext,
    DelegationRecord,
    DelegationRequest,
    TaskStatus,
    utcnow,
)
from agentorg.engine.prompts import build_system_prompt, build_task_message
from agentorg.engine.registry import AgentRegistry
from agentorg.engine.tools import (
    DELEGATE_TOOL_NAME,
    ToolCatalog,
    ToolInvocation,
    ToolResult,
    delegate_tool_schema,
)
from agentorg.errors import InactiveAgentError, ModelCallError, NotFoundError, ToolExecutionError
from agentorg.logging import get_logger
from agentorg.memory import LearningExtractor, MemoryContext, NullLearningExtractor, NullMemoryContext
from agentorg.providers.llm import Message, ModelClient, ModelResponse, ToolCall, resolve_agent_model
from agentorg.safety.loop_detector import ToolLoopDetector
from agentorg.storage.interfaces import ConversationStore, TaskStore

logger = get_logger(__name__)

EMPTY_CHAT_RESPONSE = "I'm ready to help. What would you like me to work on?"
COMPLEXITY_HINT = "complex"


@dataclass
class _Invocation:
    """Mutable state of one runtime invocation."""

    agent: AgentDefinition
    context: DelegationContext | None
    messages: list[Message]
    tool_schemas: list[dict[str, Any]]
    allowed_tools: frozenset[str]
    actions: list[ActionRecord] = field(default_factory=list)
    delegations: list[DelegationRecord] = field(default_factory=list)
    detector: ToolLoopDetector = field(default_factory=ToolLoopDetector)
    response: str = ""
    finished: bool = False
    model_calls: int = 0
    tokens_used: int = 0
    model: str = ""

    @property
    def task_id(self) -> str | None:
        return self.context.task.id if self.context else None

    def result(self) -> ChatResult:
        return ChatResult(
            response=self.response,
            agent_id=self.agent.id,
            agent_slug=self.agent.slug,
            actions=list(self.actions),
            delegations=list(self.delegations),
            tokens_used=self.tokens_used,
            model=self.model,
        )


class AgentExecutionRuntime:
    """
    Drives agents through the tool-calling loop.

    Delegated sub-tasks started through the "delegate" tool run inline inside
    the parent's tool dispatch by default, so one parent turn can return a
    finished sub-agent result. With ``execution_mode="queued"`` the sub-task
    is only created and left for ``run_pending_tasks``.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        tasks: TaskStore,
        conversations: ConversationStore,
        delegation: DelegationEngine,
        model: ModelClient,
        memory: MemoryContext | None = None,
        learning: LearningExtractor | None = None,
        catalog: ToolCatalog | None = None,
        settings: Settings | None = None,
        background: BackgroundTasks | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.tasks = tasks
        self.conversations = conversations
        self.delegation = delegation
        self.model = model
        self.memory = memory or NullMemoryContext()
        self.learning = learning or NullLearningExtractor()
        self.catalog = catalog or ToolCatalog()
        self.settings = settings or Settings()
        self.background = background or delegation.background
        self.clock = clock

    # ── ENTRY POINTS ────────────────────────────────────────────────────

    async def execute_agent_chat(self, agent_slug: str, user_message: str, user_id: str) -> ChatResult:
        """
        Run one direct user turn against an agent.

        Raises:
            NotFoundError: no agent with that slug
            InactiveAgentError: the agent is deactivated
            ModelCallError: the model call failed; nothing is persisted
        """
        agent = await self.registry.get(agent_slug)
        if agent is None:
            logger.warning("chat_agent_not_found", agent_slug=agent_slug)
            raise NotFoundError("agent", agent_slug)
        if not agent.is_active:
            logger.warning("chat_agent_inactive", agent_slug=agent_slug)
            raise InactiveAgentError(agent_slug)

        history = await self.conversations.list_recent(agent.id, self.settings.history_limit)
        memory = await self._memory_sections(agent, user_message)
        system_prompt = build_system_prompt(agent, self.clock(), memory=memory)

        messages: list[Message] = [{"role": "system", "content": system_prompt}]
        messages.extend(self._replay(record) for record in history)
        messages.append({"role": "user", "content": user_message})

        run = self._start(agent, None, messages)
        await self._loop(run)
        if run.finished and not run.response:
            run.response = EMPTY_CHAT_RESPONSE

        await self.conversations.append(
            ConversationRecord(
                agent_id=agent.id,
                role=ConversationRole.USER.value,
                content=user_message,
                metadata={"user_id": user_id},
            )
        )
        await self.conversations.append(
            ConversationRecord(
                agent_id=agent.id,
                role=ConversationRole.ASSISTANT.value,
                content=run.response,
                metadata=self._turn_metadata(run),
            )
        )

        self._spawn(
            lambda: self.learning.extract_conversation_learnings(
                agent, user_message, run.response, list(run.actions)
            ),
            "learning_extraction_failed",
            agent_slug=agent.slug,
        )

        logger.info(
            "agent_chat_completed",
            agent_slug=agent.slug,
            model=run.model,
            tokens_used=run.tokens_used,
            model_calls=run.model_calls,
            actions=len(run.actions),
            delegations=len(run.delegations),
        )
        return run.result()

    async def execute_agent_task(self, task_id: str) -> ChatResult | None:
        """
        Execute a delegated task with its assigned agent.

        Returns None when the task or its agent cannot be resolved, the task
        is not pending, or execution failed (the task is then marked failed).
        """
        task = await self.tasks.get(task_id)
        if task is None:
            logger.error("agent_task_not_found", task_id=task_id)
            return None

        agent = await self.registry.get_by_id(task.assigned_to)
        if agent is None:
            logger.error("assigned_agent_not_found", task_id=task_id, assigned_to=task.assigned_to)
            return None
        if not agent.is_active:
            await self.delegation.fail_delegation(task_id, f'Agent "{agent.slug}" is inactive')
            return None

        parent_agent = None if task.from_user else await self.registry.get_by_id(task.assigned_by)

        started = await self.delegation.start_delegation(task_id)
        if started is None:
            return None
        context = DelegationContext.for_task(started, parent_agent)

        try:
            run = await self._run_task(agent, started, context)
        except Exception as exc:
            logger.error(
                "agent_task_failed",
                task_id=task_id,
                agent_slug=agent.slug,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            error = str(exc)
            await self.delegation.fail_delegation(task_id, error)
            self._spawn(
                lambda: self.learning.store_task_outcome(agent, started, "failed", error=error),
                "task_outcome_learning_failed",
                task_id=task_id,
            )
            return None

        self._spawn(
            lambda: self.learning.store_task_outcome(
                agent, started, TaskStatus.COMPLETED.value, response=run.response
            ),
            "task_outcome_learning_failed",
            task_id=task_id,
        )
        logger.info(
            "agent_task_completed",
            task_id=task_id,
            agent_slug=agent.slug,
            model=run.model,
            tokens_used=run.tokens_used,
            model_calls=run.model_calls,
            actions=len(run.actions),
        )
        return run.result()

    async def run_pending_tasks(
        self, agent_id: str | None = None, limit: int | None = None
    ) -> list[ChatResult | None]:
        """Execute pending tasks in priority order (queued execution mode)."""
        if agent_id is not None:
            pending = await self.delegation.get_pending_delegations(agent_id)
        else:
            pending = await self.tasks.list_all(status=TaskStatus.PENDING.value)
        if limit is not None:
            pending = pending[:limit]

        results: list[ChatResult | None] = []
        for task in pending:
            results.append(await self.execute_agent_task(task.id))
        return results

    # ── TASK EXECUTION ──────────────────────────────────────────────────

    async def _run_task(
        self, agent: AgentDefinition, task: DelegatedTask, context: DelegationContext
    ) -> _Invocation:
        task_message = build_task_message(task)
        memory = await self._memory_sections(agent, task_message)
        system_prompt = build_system_prompt(agent, self.clock(), context=context, memory=memory)
        messages: list[Message] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": task_message},
        ]

        run = self._start(agent, context, messages)
        await self._loop(run)

        await self.conversations.append(
            ConversationRecord(
                agent_id=agent.id,
                role=ConversationRole.DELEGATION.value,
                content=f"[Delegated Task: {task.title}]\n\n{run.response}",
                metadata={
                    **self._turn_metadata(run),
                    "delegation_from": None if task.from_user else task.assigned_by,
                    "delegation_task_id": task.id,
                },
            )
        )
        await self.delegation.complete_delegation(
            task.id,
            {
                "response": run.response,
                "actions": [a.to_dict() for a in run.actions],
                "tokens_used": run.tokens_used,
                "model": run.model,
            },
        )
        return run

    # ── LOOP ────────────────────────────────────────────────────────────

    def _start(
        self, agent: AgentDefinition, context: DelegationContext | None, messages: list[Message]
    ) -> _Invocation:
        schemas, allowed = self._build_tools(agent, context)
        return _Invocation(
            agent=agent,
            context=context,
            messages=messages,
            tool_schemas=schemas,
            allowed_tools=allowed,
        )

    def _build_tools(
        self, agent: AgentDefinition, context: DelegationContext | None
    ) -> tuple[list[dict[str, Any]], frozenset[str]]:
        if context is not None:
            permissions = context.granted_permissions
            available = agent.available_tools & context.granted_tools
        else:
            permissions = agent.action_permissions
            available = agent.available_tools

        specs = self.catalog.available(available, permissions)
        schemas = [spec.schema() for spec in specs]
        allowed = {spec.name for spec in specs}

        holds_delegate = DELEGATE_TOOL_NAME in available or DELEGATE_TOOL_NAME in permissions
        if agent.can_delegate_to and holds_delegate:
            schemas.insert(0, delegate_tool_schema())
            allowed.add(DELEGATE_TOOL_NAME)

        return schemas, frozenset(allowed)

    async def _loop(self, run: _Invocation) -> None:
        for _ in range(self.settings.max_turns):
            response = await self._call_model(run)
            run.model_calls += 1
            run.tokens_used += response.tokens_used
            run.model = response.model_used or run.model

            message = response.message
            if not message.tool_calls:
                run.response = message.content or ""
                run.finished = True
                return

            if message.content:
                run.response = message.content
            run.messages.append(message.to_message())

            tripped = False
            for call in message.tool_calls:
                if tripped:
                    content = f"Skipped {call.name}: tool loop circuit breaker triggered"
                else:
                    content, tripped = await self._dispatch(run, call)
                run.messages.append({"role": "tool", "tool_call_id": call.id, "content": content})

            if tripped and run.tool_schemas:
                logger.warning(
                    "tool_loop_circuit_breaker",
                    agent_slug=run.agent.slug,
                    task_id=run.task_id,
                    model_calls=run.model_calls,
                )
                # Tools are withheld from here on so the model has to answer
                run.tool_schemas = []
                run.allowed_tools = frozenset()

        logger.warning(
            "max_turns_reached",
            agent_slug=run.agent.slug,
            task_id=run.task_id,
            max_turns=self.settings.max_turns,
        )

    async def _call_model(self, run: _Invocation) -> ModelResponse:
        agent = run.agent
        temperature = (
            agent.temperature if agent.temperature is not None else self.settings.default_temperature
        )
        try:
            return await self.model.chat_completion(
                messages=list(run.messages),
                tools=run.tool_schemas or None,
                temperature=temperature,
                max_tokens=agent.max_tokens or self.settings.default_max_tokens,
                complexity_hint=COMPLEXITY_HINT,
                preferred_model=resolve_agent_model(agent, self.settings.model_tiers),
            )
        except ModelCallError:
            raise
        except Exception as exc:
            raise ModelCallError(f"{type(exc).__name__}: {exc}") from exc

    # ── TOOL DISPATCH ───────────────────────────────────────────────────

    async def _dispatch(self, run: _Invocation, call: ToolCall) -> tuple[str, bool]:
        """Run one tool call. Returns the tool-result text and whether to stop the loop."""
        args: dict[str, Any] = {}
        try:
            if call.name not in run.allowed_tools:
                raise ToolExecutionError(call.name, f"tool not available to {run.agent.slug}")
            args = call.parse_arguments()
            if call.name == DELEGATE_TOOL_NAME:
                outcome = await self._delegate(run, args)
            else:
                outcome = await self._call_tool(run, call.name, args)
        except Exception as exc:
            logger.error(
                "tool_execution_failed",
                tool=call.name,
                agent_slug=run.agent.slug,
                task_id=run.task_id,
                error=str(exc),
            )
            outcome = ToolResult(
                result=f"Error executing {call.name}: {exc}",
                action=ActionRecord(
                    action_type=call.name,
                    parameters=args,
                    status="failed",
                    error_message=str(exc),
                ),
            )

        if outcome.action is not None:
            run.actions.append(outcome.action)

        text = outcome.result
        detection = run.detector.record_and_check(call.name, args, text)
        if detection.detected:
            logger.warning(
                "tool_loop_detected",
                tool=call.name,
                agent_slug=run.agent.slug,
                detector=detection.detector,
                severity=detection.severity,
                count=detection.count,
            )
            text = f"{text}\n\n[Loop warning: {detection.message}. Change approach or finish.]"
        return text, detection.should_stop

    async def _call_tool(self, run: _Invocation, name: str, args: dict[str, Any]) -> ToolResult:
        spec = self.catalog.get(name)
        if spec is None:
            raise ToolExecutionError(name, f"unknown tool: {name}")
        raw = await spec.handler(ToolInvocation(agent=run.agent, arguments=args, context=run.context))
        if isinstance(raw, ToolResult):
            return raw
        return ToolResult(result=str(raw))

    async def _delegate(self, run: _Invocation, args: dict[str, Any]) -> ToolResult:
        to_agent = args.get("to_agent")
        title = args.get("title")
        if not to_agent or not title:
            raise ToolExecutionError(DELEGATE_TOOL_NAME, "to_agent and title are required")

        context = run.context
        request = DelegationRequest(
            from_agent_id=run.agent.id,
            to_agent_slug=str(to_agent),
            title=str(title),
            description=str(args.get("description") or ""),
            priority=_coerce_priority(args.get("priority")),
            # Inside a delegation, request no more than this invocation was granted
            required_permissions=context.granted_permissions if context else None,
            required_tools=context.granted_tools if context else None,
            parent_task_id=context.task.id if context else None,
        )
        outcome = await self.delegation.delegate_task(request)
        parameters = {"to": to_agent, "title": title}

        task_id = outcome.task_id
        if task_id is None:
            return ToolResult(
                result=f"Delegation failed: {outcome.error}",
                action=ActionRecord(
                    action_type=DELEGATE_TOOL_NAME,
                    entity_type="agent_task",
                    parameters=parameters,
                    status="failed",
                    error_message=outcome.error,
                ),
            )

        if self.settings.execution_mode == "queued":
            text = f'Task delegated to "{to_agent}" (task ID: {task_id}). Awaiting completion.'
            status = TaskStatus.PENDING.value
        else:
            sub_result = await self.execute_agent_task(task_id)
            task = await self.tasks.get(task_id)
            status = task.status if task else TaskStatus.FAILED.value
            if sub_result is not None:
                text = f'Delegation to "{to_agent}" completed.\n\nResult:\n{sub_result.response}'
            elif task is not None and task.status == TaskStatus.FAILED.value:
                text = f'Delegation to "{to_agent}" failed (task ID: {task_id}): {task.error}'
            else:
                text = f'Task delegated to "{to_agent}" (task ID: {task_id}). Awaiting completion.'

        run.delegations.append(DelegationRecord(task_id=task_id, to_agent_slug=str(to_agent), status=status))
        return ToolResult(
            result=text,
            action=ActionRecord(
                action_type=DELEGATE_TOOL_NAME,
                entity_type="agent_task",
                entity_id=task_id,
                parameters=parameters,
                status="success",
            ),
        )

    # ── HELPERS ─────────────────────────────────────────────────────────

    async def _memory_sections(self, agent: AgentDefinition, query: str) -> str:
        """Static and query-relevant memory, each getting half the budget."""
        budget = agent.max_context_tokens or self.settings.default_context_tokens
        half = budget // 2
        try:
            static, relevant = await asyncio.gather(
                self.memory.build_static_context(agent.id, half),
                self.memory.build_relevant_context(agent.id, query, half),
            )
        except Exception as exc:
            logger.warning("memory_context_unavailable", agent_slug=agent.slug, error=str(exc))
            return ""
        return "\n\n".join(section for section in (static, relevant) if section)

    @staticmethod
    def _replay(record: ConversationRecord) -> Message:
        role = "system" if record.role == ConversationRole.DELEGATION.value else record.role
        return {"role": role, "content": record.content}

    @staticmethod
    def _turn_metadata(run: _Invocation) -> dict[str, Any]:
        return {
            "model": run.model,
            "tokens_used": run.tokens_used,
            "model_calls": run.model_calls,
            "actions_taken": [a.action_type for a in run.actions],
            "delegations": [d.to_agent_slug for d in run.delegations],
        }

    def _spawn(
        self,
        factory: Callable[[], Coroutine[Any, Any, Any]],
        event: str,
        **context: Any,
    ) -> None:
        async def runner() -> None:
            await factory()

        self.background.spawn(runner(), event, **context)


def _coerce_priority(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None
