"""Shared fixtures: an in-memory agent org and a scripted model client."""

from __future__ import annotations

import itertools
import json
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from agentorg.config import Settings
from agentorg.delegation.models import AgentDefinition
from agentorg.engine.tools import ToolCatalog, ToolInvocation, ToolSpec
from agentorg.providers.llm import AssistantMessage, ModelResponse, ToolCall
from agentorg.services import Services, build_services
from agentorg.storage.memory import (
    InMemoryAgentStore,
    InMemoryConversationStore,
    InMemoryTaskStore,
)

_call_ids = itertools.count(1)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_agent(slug: str, **overrides: Any) -> AgentDefinition:
    fields: dict[str, Any] = {
        "id": f"id-{slug}",
        "slug": slug,
        "name": slug.replace("-", " ").title(),
    }
    fields.update(overrides)
    return AgentDefinition(**fields)


def reply(content: str | None, tokens: int = 10, model: str = "test-model") -> ModelResponse:
    return ModelResponse(AssistantMessage(content=content), tokens_used=tokens, model_used=model)


def tool_call(
    name: str, arguments: Mapping[str, Any] | str, content: str | None = None
) -> ModelResponse:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    call = ToolCall(id=f"call_{next(_call_ids)}", name=name, arguments=raw)
    return ModelResponse(
        AssistantMessage(content=content, tool_calls=[call]),
        tokens_used=5,
        model_used="test-model",
    )


Script = ModelResponse | Exception | Callable[[list[dict[str, Any]]], ModelResponse]


class ScriptedModelClient:
    """Plays back queued responses in order and records every call.

    Queue entries may be a ModelResponse, an exception to raise, or a
    callable taking the message list. ``default`` answers once the queue is
    empty.
    """

    def __init__(self, script: Sequence[Script] = (), default: Script | None = None) -> None:
        self.script = list(script)
        self.default = default
        self.calls: list[dict[str, Any]] = []

    async def chat_completion(
        self,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        complexity_hint: str = "complex",
        preferred_model: str | None = None,
    ) -> ModelResponse:
        self.calls.append({
            "messages": list(messages),
            "tools": list(tools or []),
            "temperature": temperature,
            "max_tokens": max_tokens,
            "complexity_hint": complexity_hint,
            "preferred_model": preferred_model,
        })
        step = self.script.pop(0) if self.script else self.default
        if step is None:
            raise AssertionError("scripted model client ran out of responses")
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(list(messages))
        return step

    def tool_names(self, call_index: int) -> list[str]:
        return [t["function"]["name"] for t in self.calls[call_index]["tools"]]


def standard_org() -> list[AgentDefinition]:
    """ceo -> cmo -> content-writer, plus a cfo and an analyst."""
    return [
        make_agent(
            "ceo",
            role="executive",
            soul="You are the CEO.",
            can_delegate_to={"cmo", "cfo"},
            available_tools={"delegate", "search_web", "send_email"},
            action_permissions={"read", "write", "delegate", "send"},
        ),
        make_agent(
            "cmo",
            role="manager",
            parent_id="id-ceo",
            soul="You are the CMO.",
            can_delegate_to={"content-writer"},
            available_tools={"delegate", "search_web", "draft_document"},
            action_permissions={"read", "write", "delegate"},
        ),
        make_agent(
            "content-writer",
            role="specialist",
            parent_id="id-cmo",
            soul="You write content.",
            available_tools={"draft_document", "search_web"},
            action_permissions={"read", "write"},
        ),
        make_agent(
            "cfo",
            role="manager",
            parent_id="id-ceo",
            soul="You are the CFO.",
            available_tools={"search_web"},
            action_permissions={"read"},
        ),
        make_agent(
            "analyst",
            role="worker",
            parent_id="id-cfo",
            available_tools={"search_web", "send_email", "broken"},
            action_permissions={"read"},
        ),
    ]


async def _search_web(call: ToolInvocation) -> str:
    return f"results for {call.arguments.get('query', '')}"


async def _send_email(call: ToolInvocation) -> str:
    return f"sent to {call.arguments.get('to', '')}"


async def _draft_document(call: ToolInvocation) -> str:
    return "draft saved"


async def _broken(call: ToolInvocation) -> str:
    raise RuntimeError("boom")


def standard_catalog() -> ToolCatalog:
    return ToolCatalog([
        ToolSpec("search_web", "Search the web", _search_web, required_permissions={"read"}),
        ToolSpec("send_email", "Send an email", _send_email, required_permissions={"send"}),
        ToolSpec("draft_document", "Save a draft", _draft_document, required_permissions={"write"}),
        ToolSpec("broken", "Always fails", _broken),
    ])


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path / "agentorg")


@pytest.fixture
def model() -> ScriptedModelClient:
    return ScriptedModelClient()


@pytest.fixture
def services(settings: Settings, model: ScriptedModelClient) -> Services:
    return build_services(
        settings,
        InMemoryAgentStore(standard_org()),
        InMemoryTaskStore(),
        InMemoryConversationStore(),
        model,
        catalog=standard_catalog(),
    )
