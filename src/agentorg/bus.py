"""Inter-agent message bus.

Delivery is at-most-once: a failing subscriber loses the message and the
sender is never told. Callers treat every send as fire-and-forget.
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from agentorg.delegation.models import utcnow
from agentorg.logging import get_logger

logger = get_logger(__name__)

MAILBOX_SIZE = 200


@dataclass
class BusMessage:
    kind: str  # delegation, result, broadcast
    from_id: str
    content: str
    to_id: str | None = None
    task_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)


Subscriber = Callable[[BusMessage], Awaitable[None]]


class MessageBus(Protocol):
    async def send_delegation(self, from_id: str, to_id: str, task_id: str, text: str) -> None: ...

    async def send_result(self, from_id: str, to_id: str, task_id: str, text: str) -> None: ...

    async def broadcast(self, from_id: str, text: str) -> None: ...


class InMemoryMessageBus:
    """Per-recipient bounded mailboxes plus optional async subscribers."""

    def __init__(self, mailbox_size: int = MAILBOX_SIZE) -> None:
        self._mailboxes: dict[str, deque[BusMessage]] = defaultdict(
            lambda: deque(maxlen=mailbox_size)
        )
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._broadcast_log: deque[BusMessage] = deque(maxlen=mailbox_size)

    def subscribe(self, agent_id: str, handler: Subscriber) -> None:
        self._subscribers[agent_id].append(handler)

    async def send_delegation(self, from_id: str, to_id: str, task_id: str, text: str) -> None:
        await self._deliver(BusMessage("delegation", from_id, text, to_id=to_id, task_id=task_id))

    async def send_result(self, from_id: str, to_id: str, task_id: str, text: str) -> None:
        await self._deliver(BusMessage("result", from_id, text, to_id=to_id, task_id=task_id))

    async def broadcast(self, from_id: str, text: str) -> None:
        message = BusMessage("broadcast", from_id, text)
        self._broadcast_log.append(message)
        for agent_id in list(self._subscribers):
            if agent_id != from_id:
                await self._notify(agent_id, message)

    def drain(self, agent_id: str) -> list[BusMessage]:
        """Remove and return all queued messages for a recipient."""
        mailbox = self._mailboxes.get(agent_id)
        if not mailbox:
            return []
        messages = list(mailbox)
        mailbox.clear()
        return messages

    async def _deliver(self, message: BusMessage) -> None:
        to_id = message.to_id
        if to_id is None:
            raise ValueError(f"{message.kind} message has no recipient")
        self._mailboxes[to_id].append(message)
        await self._notify(to_id, message)

    async def _notify(self, agent_id: str, message: BusMessage) -> None:
        for handler in self._subscribers.get(agent_id, []):
            try:
                await handler(message)
            except Exception as exc:
                logger.warning(
                    "bus_subscriber_failed",
                    kind=message.kind,
                    to_id=agent_id,
                    task_id=message.task_id,
                    error=str(exc),
                )
