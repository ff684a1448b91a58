"""Memory and learning collaborators used while assembling agent context.

The runtime only depends on these protocols; retrieval, embeddings and
learning extraction live outside this package.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from agentorg.delegation.models import ActionRecord, AgentDefinition, DelegatedTask


class MemoryContext(Protocol):
    async def build_static_context(self, agent_id: str, token_budget: int) -> str:
        """Importance-ranked summary of an agent's memory."""
        ...

    async def build_relevant_context(self, agent_id: str, query_text: str, token_budget: int) -> str:
        """Recall section for memories relevant to the current query."""
        ...


class LearningExtractor(Protocol):
    async def extract_conversation_learnings(
        self,
        agent: AgentDefinition,
        user_message: str,
        assistant_response: str,
        actions: Sequence[ActionRecord],
    ) -> None: ...

    async def store_task_outcome(
        self,
        agent: AgentDefinition,
        task: DelegatedTask,
        outcome: str,
        response: str | None = None,
        error: str | None = None,
    ) -> None: ...


class NullMemoryContext:
    async def build_static_context(self, agent_id: str, token_budget: int) -> str:
        return ""

    async def build_relevant_context(self, agent_id: str, query_text: str, token_budget: int) -> str:
        return ""


class NullLearningExtractor:
    async def extract_conversation_learnings(
        self,
        agent: AgentDefinition,
        user_message: str,
        assistant_response: str,
        actions: Sequence[ActionRecord],
    ) -> None:
        return None

    async def store_task_outcome(
        self,
        agent: AgentDefinition,
        task: DelegatedTask,
        outcome: str,
        response: str | None = None,
        error: str | None = None,
    ) -> None:
        return None
