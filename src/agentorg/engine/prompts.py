"""System prompt and task message assembly."""

from __future__ import annotations

from datetime import datetime

from agentorg.delegation.models import AgentDefinition, DelegatedTask, DelegationContext

RECALL_INSTRUCTION = (
    'When you see items under "Relevant Past Context", reference them naturally if they '
    'are pertinent, e.g. "Based on our earlier discussion about X...". Only reference them '
    "when genuinely relevant; do not force connections."
)


def _listing(values: frozenset[str]) -> str:
    return ", ".join(sorted(values)) if values else "(none)"


def build_system_prompt(
    agent: AgentDefinition,
    now: datetime,
    context: DelegationContext | None = None,
    memory: str = "",
) -> str:
    """
    Build an agent's system prompt.

    Args:
        agent: Agent whose soul is the base of the prompt
        now: Current timestamp
        context: Delegation scope when running a delegated task
        memory: Pre-rendered memory sections (static and relevant)

    Returns:
        The prompt text
    """
    parts = [agent.soul.strip()]

    if context is not None:
        task = context.task
        banner = [
            "## Current Delegated Task",
            f"You have been delegated a task by {context.delegator_name}.",
            f"Task: {task.title}",
        ]
        if task.description:
            banner.append(f"Details: {task.description}")
        banner.extend([
            "",
            f"Your permissions for this task: {_listing(context.granted_permissions)}",
            f"Available tools: {_listing(context.granted_tools)}",
            "",
            "Complete the task and provide a clear, structured result.",
        ])
        parts.append("\n".join(banner))

    if agent.can_delegate_to:
        roster = "\n".join(f"- {slug}" for slug in sorted(agent.can_delegate_to))
        parts.append(
            "## Your Team (agents you can delegate to)\n"
            f"{roster}\n\n"
            "Use the `delegate` tool to assign sub-tasks to your team members when their "
            "expertise is needed."
        )

    parts.append(f"Current date/time: {now.isoformat()}")

    if memory:
        parts.append(memory)

    parts.append(RECALL_INSTRUCTION)
    return "\n\n".join(p for p in parts if p)


def build_task_message(task: DelegatedTask) -> str:
    message = f"{task.title}\n\n{task.description or 'Please complete this task.'}"
    if task.review_feedback:
        message += f"\n\nReviewer feedback on your previous deliverable:\n{task.review_feedback}"
    return message
