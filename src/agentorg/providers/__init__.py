"""Model providers."""

from agentorg.providers.llm import (
    AssistantMessage,
    ModelClient,
    ModelResponse,
    OpenAICompatibleClient,
    ToolCall,
    resolve_agent_model,
)

__all__ = [
    "AssistantMessage",
    "ModelClient",
    "ModelResponse",
    "OpenAICompatibleClient",
    "ToolCall",
    "resolve_agent_model",
]
