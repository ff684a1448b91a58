"""Persistence for agents, delegated tasks and conversations."""

from agentorg.storage.database import Database, SQLiteStorage
from agentorg.storage.interfaces import AgentStore, ConversationStore, TaskStore
from agentorg.storage.memory import (
    InMemoryAgentStore,
    InMemoryConversationStore,
    InMemoryTaskStore,
)

__all__ = [
    "AgentStore",
    "ConversationStore",
    "Database",
    "InMemoryAgentStore",
    "InMemoryConversationStore",
    "InMemoryTaskStore",
    "SQLiteStorage",
    "TaskStore",
]
