"""Tests for the message bus, background tasks and settings."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agentorg.background import BackgroundTasks
from agentorg.bus import BusMessage, InMemoryMessageBus
from agentorg.config import Settings

pytestmark = pytest.mark.anyio


class TestMessageBus:
    async def test_mailboxes(self) -> None:
        bus = InMemoryMessageBus()
        await bus.send_delegation("id-ceo", "id-cmo", "task-1", "Task: Launch")
        await bus.send_result("id-cmo", "id-ceo", "task-1", '{"response": "ok"}')

        [delegation] = bus.drain("id-cmo")
        assert delegation.kind == "delegation"
        assert delegation.from_id == "id-ceo"
        assert delegation.task_id == "task-1"
        assert bus.drain("id-cmo") == []
        assert bus.drain("id-ceo")[0].kind == "result"

    async def test_mailbox_is_bounded(self) -> None:
        bus = InMemoryMessageBus(mailbox_size=3)
        for i in range(5):
            await bus.send_delegation("a", "b", f"task-{i}", "x")
        assert [m.task_id for m in bus.drain("b")] == ["task-2", "task-3", "task-4"]

    async def test_direct_message_needs_recipient(self) -> None:
        bus = InMemoryMessageBus()
        with pytest.raises(ValueError, match="no recipient"):
            await bus._deliver(BusMessage("result", "id-cmo", "orphan"))

    async def test_subscribers(self) -> None:
        bus = InMemoryMessageBus()
        received: list[BusMessage] = []

        async def handler(message: BusMessage) -> None:
            received.append(message)

        bus.subscribe("id-cmo", handler)
        await bus.send_delegation("id-ceo", "id-cmo", "task-1", "x")
        await bus.broadcast("id-ceo", "all hands")
        await bus.broadcast("id-cmo", "own broadcast")

        assert [m.kind for m in received] == ["delegation", "broadcast"]

    async def test_failing_subscriber_is_dropped(self) -> None:
        bus = InMemoryMessageBus()

        async def handler(message: BusMessage) -> None:
            raise RuntimeError("subscriber crashed")

        bus.subscribe("id-cmo", handler)
        await bus.send_delegation("id-ceo", "id-cmo", "task-1", "x")
        assert len(bus.drain("id-cmo")) == 1


class TestBackgroundTasks:
    async def test_failures_are_contained(self) -> None:
        background = BackgroundTasks()
        finished: list[str] = []

        async def ok() -> None:
            await asyncio.sleep(0)
            finished.append("ok")

        async def broken() -> None:
            raise RuntimeError("nope")

        background.spawn(ok(), "ok_failed")
        background.spawn(broken(), "broken_failed", task_id="t")
        assert background.pending == 2

        await background.wait()
        assert finished == ["ok"]
        assert background.pending == 0


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings(data_dir=Path("/tmp/agentorg"))
        assert settings.max_turns == 10
        assert settings.history_limit == 10
        assert settings.default_context_tokens == 2000
        assert settings.execution_mode == "inline"
        assert settings.depth_mode == "transitive"
        assert settings.db_path == Path("/tmp/agentorg/data/agentorg.db")

    def test_validation(self) -> None:
        with pytest.raises(ValueError, match="execution_mode"):
            Settings(execution_mode="eventually")
        with pytest.raises(ValueError, match="depth_mode"):
            Settings(depth_mode="sideways")
        with pytest.raises(ValueError, match="max_turns"):
            Settings(max_turns=0)

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("AGENTORG_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("AGENTORG_MAX_TURNS", "4")
        monkeypatch.setenv("AGENTORG_EXECUTION_MODE", "queued")
        monkeypatch.setenv("AGENTORG_MODEL_API_KEY", "sk-test")

        settings = Settings.from_env()
        assert settings.data_dir == tmp_path
        assert settings.max_turns == 4
        assert settings.execution_mode == "queued"
        assert settings.model_api_key == "sk-test"
