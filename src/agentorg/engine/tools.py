"""Tool catalog: the pluggable set of tools an agent may call.

Every tool except "delegate" is provided by the embedding application. The
runtime filters the catalog per invocation against the agent's available
tools and effective permissions, and owns the "delegate" tool itself.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from agentorg.delegation.models import ActionRecord, AgentDefinition, DelegationContext

DELEGATE_TOOL_NAME = "delegate"


@dataclass
class ToolInvocation:
    """Everything a tool handler gets to see about the call."""

    agent: AgentDefinition
    arguments: dict[str, Any]
    context: DelegationContext | None = None


@dataclass
class ToolResult:
    """Text fed back to the model, plus the side effect performed (if any)."""

    result: str
    action: ActionRecord | None = None


ToolHandler = Callable[[ToolInvocation], Awaitable[ToolResult | str]]


@dataclass
class ToolSpec:
    """
    A callable tool.

    required_permissions is an any-of set: the tool is offered when the
    effective permissions contain at least one of them. Empty means the tool
    only needs to be in the agent's available tools.
    """

    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    required_permissions: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        self.required_permissions = frozenset(self.required_permissions)

    def permitted(self, permissions: Iterable[str]) -> bool:
        if not self.required_permissions:
            return True
        return bool(self.required_permissions & frozenset(permissions))

    def schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def delegate_tool_schema() -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": DELEGATE_TOOL_NAME,
            "description": (
                "Delegate a task to one of your specialist sub-agents. Use this when a "
                "task requires domain expertise that one of your team members has."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "to_agent": {
                        "type": "string",
                        "description": "Slug of the agent to delegate to (must be on your team)",
                    },
                    "title": {
                        "type": "string",
                        "description": "Clear, actionable title for the delegated task",
                    },
                    "description": {
                        "type": "string",
                        "description": (
                            "What needs to be done, relevant context and the expected output format"
                        ),
                    },
                    "priority": {
                        "type": "number",
                        "description": "Priority 1-10 (1 = highest). Default 5.",
                    },
                },
                "required": ["to_agent", "title", "description"],
            },
        },
    }


class ToolCatalog:
    """Registry of tools keyed by name."""

    def __init__(self, tools: Iterable[ToolSpec] = ()) -> None:
        self._tools: dict[str, ToolSpec] = {}
        for spec in tools:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name == DELEGATE_TOOL_NAME:
            raise ValueError(f'"{DELEGATE_TOOL_NAME}" is provided by the runtime')
        if spec.name in self._tools:
            raise ValueError(f"tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def available(self, tool_names: Iterable[str], permissions: Iterable[str]) -> list[ToolSpec]:
        """Tools that are both available to the agent and permitted, in registration order."""
        names = frozenset(tool_names)
        perms = frozenset(permissions)
        return [spec for spec in self._tools.values() if spec.name in names and spec.permitted(perms)]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
