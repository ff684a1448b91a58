"""Model client interface and an OpenAI-compatible HTTP implementation.

Retries, provider failover and per-call timeouts belong to the client. The
runtime sees a single call with a single outcome: a ModelResponse or a
ModelCallError.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from agentorg.delegation.models import AgentDefinition
from agentorg.errors import ModelCallError
from agentorg.logging import get_logger

logger = get_logger(__name__)

Message = dict[str, Any]


@dataclass
class ToolCall:
    """A function call requested by the model. ``arguments`` is raw JSON text."""

    id: str
    name: str
    arguments: str = "{}"

    def parse_arguments(self) -> dict[str, Any]:
        parsed = json.loads(self.arguments or "{}")
        if not isinstance(parsed, dict):
            raise ValueError(f"tool arguments must be a JSON object, got {type(parsed).__name__}")
        return parsed

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class AssistantMessage:
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_message(self) -> Message:
        message: Message = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [call.to_message() for call in self.tool_calls]
        return message


@dataclass
class ModelResponse:
    message: AssistantMessage
    tokens_used: int = 0
    model_used: str = ""


class ModelClient(Protocol):
    async def chat_completion(
        self,
        messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        complexity_hint: str = "complex",
        preferred_model: str | None = None,
    ) -> ModelResponse: ...


def resolve_agent_model(agent: AgentDefinition, tiers: Mapping[str, str]) -> str | None:
    """Map an agent's model tier to a preferred model; "auto" means no preference."""
    if not agent.model_tier or agent.model_tier == "auto":
        return None
    return tiers.get(agent.model_tier, agent.model_tier)


class OpenAICompatibleClient:
    """
    Chat completions against any OpenAI-compatible endpoint.

    Works with: OpenAI, Azure OpenAI, vLLM, Ollama, LiteLLM proxies.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        default_model: str = "gpt-4o",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> OpenAICompatibleClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def chat_completion(
        self,
        messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        complexity_hint: str = "complex",
        preferred_model: str | None = None,
    ) -> ModelResponse:
        model = preferred_model or self.default_model
        payload: dict[str, Any] = {
            "model": model,
            "messages": list(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = list(tools)

        endpoint = self.base_url
        if not endpoint.endswith("/chat/completions"):
            endpoint = f"{endpoint}/chat/completions"

        logger.debug("model_call", model=model, complexity=complexity_hint, messages=len(messages))
        client = self._ensure_client()
        try:
            response = await client.post(endpoint, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ModelCallError(
                f"Model endpoint returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ModelCallError(f"Model endpoint unreachable: {exc}") from exc
        except ValueError as exc:
            raise ModelCallError("Model endpoint returned invalid JSON") from exc

        return self._parse(data, model)

    @staticmethod
    def _parse(data: Mapping[str, Any], requested_model: str) -> ModelResponse:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict) or "message" not in choices[0]:
            raise ModelCallError("No response from model")

        raw = choices[0]["message"] or {}
        tool_calls = [
            ToolCall(
                id=call.get("id", ""),
                name=call.get("function", {}).get("name", ""),
                arguments=call.get("function", {}).get("arguments") or "{}",
            )
            for call in raw.get("tool_calls") or []
            if call.get("type", "function") == "function"
        ]
        usage = data.get("usage") or {}
        return ModelResponse(
            message=AssistantMessage(content=raw.get("content"), tool_calls=tool_calls),
            tokens_used=int(usage.get("total_tokens") or 0),
            model_used=str(data.get("model") or requested_model),
        )
