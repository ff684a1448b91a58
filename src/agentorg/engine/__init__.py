"""Agent execution: registry, prompts, tool catalog and the runtime loop."""

from agentorg.engine.prompts import build_system_prompt, build_task_message
from agentorg.engine.registry import AgentRegistry
from agentorg.engine.runtime import AgentExecutionRuntime
from agentorg.engine.tools import (
    DELEGATE_TOOL_NAME,
    ToolCatalog,
    ToolInvocation,
    ToolResult,
    ToolSpec,
)

__all__ = [
    "DELEGATE_TOOL_NAME",
    "AgentExecutionRuntime",
    "AgentRegistry",
    "ToolCatalog",
    "ToolInvocation",
    "ToolResult",
    "ToolSpec",
    "build_system_prompt",
    "build_task_message",
]
