"""Agent Registry - Resolves and caches agent definitions, walks the org chart."""

from __future__ import annotations

from typing import Any

from agentorg.delegation.models import AgentDefinition, AgentRole
from agentorg.logging import get_logger
from agentorg.storage.interfaces import AgentStore

logger = get_logger(__name__)

ROLE_ORDER = {
    AgentRole.EXECUTIVE.value: 0,
    AgentRole.MANAGER.value: 1,
    AgentRole.SPECIALIST.value: 2,
    AgentRole.WORKER.value: 3,
}


class AgentRegistry:
    """
    Cache of agent definitions keyed by slug, backed by an AgentStore.

    Features:
    - Slug lookups served from cache after the first load
    - Explicit invalidation after definitions change
    - Org-chart traversal (parent_id), for reporting only

    The cache is unlocked and last-writer-wins; a stale entry only costs an
    extra reload after invalidation. Nothing here is consulted for
    delegation authorization.
    """

    # Guard against parent_id cycles in malformed data
    MAX_HIERARCHY_DEPTH = 20

    def __init__(self, store: AgentStore) -> None:
        self.store = store
        self._cache: dict[str, AgentDefinition] = {}

    async def get(self, slug: str) -> AgentDefinition | None:
        """Load an agent by slug, active or not."""
        cached = self._cache.get(slug)
        if cached is not None:
            return cached

        agent = await self.store.get_by_slug(slug)
        if agent is None:
            logger.debug("agent_not_found", slug=slug)
            return None

        self._cache[slug] = agent
        logger.debug("agent_cached", slug=slug, agent_id=agent.id)
        return agent

    async def get_by_id(self, agent_id: str) -> AgentDefinition | None:
        for agent in self._cache.values():
            if agent.id == agent_id:
                return agent

        agent = await self.store.get_by_id(agent_id)
        if agent is not None:
            self._cache[agent.slug] = agent
        return agent

    def invalidate(self, slug: str) -> None:
        if self._cache.pop(slug, None) is not None:
            logger.debug("agent_cache_invalidated", slug=slug)

    def clear(self) -> None:
        self._cache.clear()
        logger.debug("agent_cache_cleared")

    def cached_slugs(self) -> list[str]:
        return sorted(self._cache)

    async def list_active(self) -> list[AgentDefinition]:
        """All active agents, executive -> manager -> specialist -> worker."""
        agents = await self.store.list_agents(active_only=True)
        for agent in agents:
            self._cache[agent.slug] = agent
        return sorted(agents, key=lambda a: (ROLE_ORDER.get(a.role, 99), a.slug))

    async def get_hierarchy(self, agent_id: str) -> list[AgentDefinition]:
        """Reporting chain from the agent up to the root (agent first)."""
        chain: list[AgentDefinition] = []
        seen: set[str] = set()
        current_id: str | None = agent_id

        while current_id and current_id not in seen and len(chain) < self.MAX_HIERARCHY_DEPTH:
            agent = await self.get_by_id(current_id)
            if agent is None:
                break
            chain.append(agent)
            seen.add(current_id)
            current_id = agent.parent_id

        return chain

    async def get_children(self, agent_id: str) -> list[AgentDefinition]:
        return await self.store.list_active_children(agent_id)

    async def get_stats(self) -> dict[str, Any]:
        """Registry statistics."""
        agents = await self.store.list_agents(active_only=False)

        by_role: dict[str, int] = {}
        active = 0
        for agent in agents:
            by_role[agent.role] = by_role.get(agent.role, 0) + 1
            if agent.is_active:
                active += 1

        return {
            "total_agents": len(agents),
            "active_agents": active,
            "by_role": by_role,
            "cached": len(self._cache),
        }
