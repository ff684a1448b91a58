"""SQLite persistence: WAL-mode schema owner plus async stores over aiosqlite."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from agentorg.delegation.models import AgentDefinition, ConversationRecord, DelegatedTask
from agentorg.logging import get_logger

logger = get_logger(__name__)


class Database:
    """Synchronous SQLite access with WAL mode, used for setup and inspection."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or Path.home() / ".agentorg"
        self.db_path = self.data_dir / "data" / "agentorg.db"

    def _ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "data").mkdir(exist_ok=True)

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with WAL mode."""
        self._ensure_dirs()
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        """Create all tables if they don't exist."""
        with self.connect() as conn:
            conn.executescript(_SCHEMA)

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Execute a query and return results."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()


# ── ROW CONVERSION ──────────────────────────────────────────────────────


def _dump_set(values: Iterable[str]) -> str:
    return json.dumps(sorted(values))


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_agent(row: aiosqlite.Row) -> AgentDefinition:
    return AgentDefinition(
        id=row["id"],
        slug=row["slug"],
        name=row["name"],
        role=row["role"],
        parent_id=row["parent_id"],
        soul=row["soul"],
        available_tools=frozenset(json.loads(row["available_tools"])),
        action_permissions=frozenset(json.loads(row["action_permissions"])),
        can_delegate_to=frozenset(json.loads(row["can_delegate_to"])),
        max_delegation_depth=row["max_delegation_depth"],
        model_tier=row["model_tier"],
        temperature=row["temperature"],
        max_tokens=row["max_tokens"],
        max_context_tokens=row["max_context_tokens"],
        is_active=bool(row["is_active"]),
    )


def _row_to_task(row: aiosqlite.Row) -> DelegatedTask:
    return DelegatedTask(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        assigned_by=row["assigned_by"],
        assigned_to=row["assigned_to"],
        delegation_chain=json.loads(row["delegation_chain"]),
        depth=row["depth"],
        status=row["status"],
        priority=row["priority"],
        granted_permissions=frozenset(json.loads(row["granted_permissions"])),
        granted_tools=frozenset(json.loads(row["granted_tools"])),
        result=json.loads(row["result"]) if row["result"] else None,
        deliverable_type=row["deliverable_type"],
        error=row["error"],
        review_feedback=row["review_feedback"],
        deadline=_parse_ts(row["deadline"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        started_at=_parse_ts(row["started_at"]),
        completed_at=_parse_ts(row["completed_at"]),
    )


def _row_to_record(row: aiosqlite.Row) -> ConversationRecord:
    return ConversationRecord(
        id=row["id"],
        agent_id=row["agent_id"],
        role=row["role"],
        content=row["content"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


# ── ASYNC STORES ────────────────────────────────────────────────────────


class SQLiteStorage:
    """
    One aiosqlite connection shared by the agent, task and conversation stores.

    Usage:
        async with SQLiteStorage(settings.db_path) as storage:
            engine = DelegationEngine(storage.agents, storage.tasks, bus)
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None
        self.agents = SQLiteAgentStore(self)
        self.tasks = SQLiteTaskStore(self)
        self.conversations = SQLiteConversationStore(self)

    async def __aenter__(self) -> SQLiteStorage:
        await self._init_db()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.close()

    async def _init_db(self) -> None:
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SQLiteStorage is not open; use 'async with'")
        return self._db


class SQLiteAgentStore:
    def __init__(self, storage: SQLiteStorage) -> None:
        self._storage = storage

    async def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[AgentDefinition]:
        cursor = await self._storage.db.execute(sql, params)
        return [_row_to_agent(row) for row in await cursor.fetchall()]

    async def get_by_slug(self, slug: str) -> AgentDefinition | None:
        found = await self._fetch("SELECT * FROM agents WHERE slug = ?", (slug,))
        return found[0] if found else None

    async def get_by_id(self, agent_id: str) -> AgentDefinition | None:
        found = await self._fetch("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return found[0] if found else None

    async def list_active_children(self, parent_id: str) -> list[AgentDefinition]:
        return await self._fetch(
            "SELECT * FROM agents WHERE parent_id = ? AND is_active = 1 ORDER BY slug",
            (parent_id,),
        )

    async def list_agents(self, active_only: bool = True) -> list[AgentDefinition]:
        if active_only:
            return await self._fetch("SELECT * FROM agents WHERE is_active = 1 ORDER BY slug")
        return await self._fetch("SELECT * FROM agents ORDER BY slug")

    async def save(self, agent: AgentDefinition) -> None:
        """Insert or update an agent by id. Raises ValueError on a slug clash."""
        db = self._storage.db
        try:
            await db.execute(
                """
                INSERT INTO agents (
                    id, slug, name, role, parent_id, soul, available_tools,
                    action_permissions, can_delegate_to, max_delegation_depth,
                    model_tier, temperature, max_tokens, max_context_tokens, is_active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    slug = excluded.slug,
                    name = excluded.name,
                    role = excluded.role,
                    parent_id = excluded.parent_id,
                    soul = excluded.soul,
                    available_tools = excluded.available_tools,
                    action_permissions = excluded.action_permissions,
                    can_delegate_to = excluded.can_delegate_to,
                    max_delegation_depth = excluded.max_delegation_depth,
                    model_tier = excluded.model_tier,
                    temperature = excluded.temperature,
                    max_tokens = excluded.max_tokens,
                    max_context_tokens = excluded.max_context_tokens,
                    is_active = excluded.is_active,
                    updated_at = datetime('now')
                """,
                (
                    agent.id,
                    agent.slug,
                    agent.name,
                    agent.role,
                    agent.parent_id,
                    agent.soul,
                    _dump_set(agent.available_tools),
                    _dump_set(agent.action_permissions),
                    _dump_set(agent.can_delegate_to),
                    agent.max_delegation_depth,
                    agent.model_tier,
                    agent.temperature,
                    agent.max_tokens,
                    agent.max_context_tokens,
                    int(agent.is_active),
                ),
            )
        except sqlite3.IntegrityError as exc:
            await db.rollback()
            logger.warning("agent_slug_conflict", agent_id=agent.id, slug=agent.slug)
            raise ValueError(f"slug already in use: {agent.slug}") from exc
        await db.commit()


_TASK_COLUMNS = (
    "id, title, description, assigned_by, assigned_to, delegation_chain, depth, "
    "status, priority, granted_permissions, granted_tools, result, deliverable_type, "
    "error, review_feedback, deadline, created_at, started_at, completed_at"
)


def _task_params(task: DelegatedTask) -> tuple[Any, ...]:
    return (
        task.id,
        task.title,
        task.description,
        task.assigned_by,
        task.assigned_to,
        json.dumps(task.delegation_chain),
        task.depth,
        task.status,
        task.priority,
        _dump_set(task.granted_permissions),
        _dump_set(task.granted_tools),
        json.dumps(task.result, default=str) if task.result is not None else None,
        task.deliverable_type,
        task.error,
        task.review_feedback,
        _ts(task.deadline),
        _ts(task.created_at),
        _ts(task.started_at),
        _ts(task.completed_at),
    )


class SQLiteTaskStore:
    def __init__(self, storage: SQLiteStorage) -> None:
        self._storage = storage

    async def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[DelegatedTask]:
        cursor = await self._storage.db.execute(sql, params)
        return [_row_to_task(row) for row in await cursor.fetchall()]

    async def insert(self, task: DelegatedTask) -> None:
        db = self._storage.db
        await db.execute(
            f"INSERT INTO agent_tasks ({_TASK_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            _task_params(task),
        )
        await db.commit()

    async def update(self, task: DelegatedTask) -> None:
        """Persist lifecycle fields. Identity, chain and grants are immutable."""
        db = self._storage.db
        cursor = await db.execute(
            """
            UPDATE agent_tasks SET
                status = ?, result = ?, deliverable_type = ?, error = ?,
                review_feedback = ?, started_at = ?, completed_at = ?
            WHERE id = ?
            """,
            (
                task.status,
                json.dumps(task.result, default=str) if task.result is not None else None,
                task.deliverable_type,
                task.error,
                task.review_feedback,
                _ts(task.started_at),
                _ts(task.completed_at),
                task.id,
            ),
        )
        if cursor.rowcount == 0:
            raise KeyError(task.id)
        await db.commit()

    async def get(self, task_id: str) -> DelegatedTask | None:
        found = await self._fetch("SELECT * FROM agent_tasks WHERE id = ?", (task_id,))
        return found[0] if found else None

    async def list_by_assignee(
        self, agent_id: str, status: str | None = None
    ) -> list[DelegatedTask]:
        if status is None:
            return await self._fetch(
                "SELECT * FROM agent_tasks WHERE assigned_to = ? "
                "ORDER BY priority ASC, created_at ASC",
                (agent_id,),
            )
        return await self._fetch(
            "SELECT * FROM agent_tasks WHERE assigned_to = ? AND status = ? "
            "ORDER BY priority ASC, created_at ASC",
            (agent_id, status),
        )

    async def list_all(self, status: str | None = None) -> list[DelegatedTask]:
        if status is None:
            return await self._fetch(
                "SELECT * FROM agent_tasks ORDER BY priority ASC, created_at ASC"
            )
        return await self._fetch(
            "SELECT * FROM agent_tasks WHERE status = ? ORDER BY priority ASC, created_at ASC",
            (status,),
        )


class SQLiteConversationStore:
    def __init__(self, storage: SQLiteStorage) -> None:
        self._storage = storage

    async def append(self, record: ConversationRecord) -> ConversationRecord:
        db = self._storage.db
        cursor = await db.execute(
            "INSERT INTO agent_conversations (agent_id, role, content, metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                record.agent_id,
                record.role,
                record.content,
                json.dumps(record.metadata, default=str),
                _ts(record.created_at),
            ),
        )
        await db.commit()
        return ConversationRecord(
            id=cursor.lastrowid,
            agent_id=record.agent_id,
            role=record.role,
            content=record.content,
            metadata=dict(record.metadata),
            created_at=record.created_at,
        )

    async def list_recent(self, agent_id: str, limit: int = 10) -> list[ConversationRecord]:
        """Last ``limit`` records for an agent, oldest first."""
        if limit <= 0:
            return []
        cursor = await self._storage.db.execute(
            "SELECT * FROM agent_conversations WHERE agent_id = ? ORDER BY id DESC LIMIT ?",
            (agent_id, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in reversed(list(rows))]


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    slug TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL DEFAULT 'worker',
    parent_id TEXT,
    soul TEXT NOT NULL DEFAULT '',
    available_tools TEXT NOT NULL DEFAULT '[]',
    action_permissions TEXT NOT NULL DEFAULT '["read"]',
    can_delegate_to TEXT NOT NULL DEFAULT '[]',
    max_delegation_depth INTEGER NOT NULL DEFAULT 2,
    model_tier TEXT NOT NULL DEFAULT 'auto',
    temperature REAL,
    max_tokens INTEGER,
    max_context_tokens INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    CHECK (role IN ('executive', 'manager', 'specialist', 'worker')),
    CHECK (max_delegation_depth >= 0)
);

CREATE TABLE IF NOT EXISTS agent_tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    assigned_by TEXT NOT NULL,
    assigned_to TEXT NOT NULL,
    delegation_chain TEXT NOT NULL,
    depth INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    priority INTEGER NOT NULL DEFAULT 5,
    granted_permissions TEXT NOT NULL DEFAULT '[]',
    granted_tools TEXT NOT NULL DEFAULT '[]',
    result TEXT,
    deliverable_type TEXT,
    error TEXT,
    review_feedback TEXT,
    deadline TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    CHECK (status IN ('pending', 'in_progress', 'completed', 'needs_review', 'failed')),
    CHECK (priority BETWEEN 1 AND 10)
);

CREATE INDEX IF NOT EXISTS idx_tasks_assignee
ON agent_tasks(assigned_to, status, priority, created_at);

CREATE TABLE IF NOT EXISTS agent_conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    CHECK (role IN ('user', 'assistant', 'delegation'))
);

CREATE INDEX IF NOT EXISTS idx_conversations_agent
ON agent_conversations(agent_id, id);

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
