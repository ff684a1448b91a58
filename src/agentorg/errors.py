"""Exception hierarchy for the delegation engine and agent runtime."""

from __future__ import annotations


class AgentOrgError(Exception):
    """Base class for all agentorg errors."""


class NotFoundError(AgentOrgError):
    """An agent or task could not be resolved."""

    def __init__(self, entity: str, key: str) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity.capitalize()} not found: {key}")


class InactiveAgentError(AgentOrgError):
    """The target agent exists but has been deactivated."""

    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f'Agent "{slug}" is inactive')


class ToolExecutionError(AgentOrgError):
    """A tool handler failed while serving a model tool call."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(message)


class ModelCallError(AgentOrgError):
    """The model client could not produce a completion."""


class InvalidTransitionError(AgentOrgError):
    """A task is not in the status an operation requires."""

    def __init__(self, task_id: str, status: str, action: str) -> None:
        self.task_id = task_id
        self.status = status
        super().__init__(f"Cannot {action} task {task_id} with status: {status}")
