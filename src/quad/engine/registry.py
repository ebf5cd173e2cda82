"""Copy-on-write table of agent id -> runtime state."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import replace
from typing import Any

from quad.engine.models import AgentConfig, AgentState


class AgentRegistry:
    """Immutable agent table.

    Every mutating operation returns a new registry and leaves the receiver
    untouched, so readers can hold on to a registry as a consistent
    point-in-time snapshot. Operations that change nothing return ``self``;
    callers compare references to detect "nothing changed".
    """

    __slots__ = ("_agents",)

    def __init__(self, agents: Mapping[str, AgentState] | None = None) -> None:
        self._agents: dict[str, AgentState] = dict(agents or {})

    def add(self, config: AgentConfig) -> AgentRegistry:
        """Insert an agent in its default ``idle`` state."""

        agents = dict(self._agents)
        agents[config.id] = AgentState(config=config)
        return AgentRegistry(agents)

    def update(self, agent_id: str, **changes: Any) -> AgentRegistry:
        """Merge ``changes`` into one agent's state.

        Unknown ids and merges that leave the state equal return ``self``.
        """

        existing = self._agents.get(agent_id)
        if existing is None:
            return self
        updated = replace(existing, **changes)
        if updated == existing:
            return self
        agents = dict(self._agents)
        agents[agent_id] = updated
        return AgentRegistry(agents)

    def remove(self, agent_id: str) -> AgentRegistry:
        if agent_id not in self._agents:
            return self
        agents = dict(self._agents)
        del agents[agent_id]
        return AgentRegistry(agents)

    def get(self, agent_id: str) -> AgentState | None:
        return self._agents.get(agent_id)

    def all(self) -> list[AgentState]:
        """All agents in insertion order."""

        return list(self._agents.values())

    def ids(self) -> tuple[str, ...]:
        return tuple(self._agents)

    def configs(self) -> list[AgentConfig]:
        return [agent.config for agent in self._agents.values()]

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __iter__(self) -> Iterator[AgentState]:
        return iter(self._agents.values())

    def __len__(self) -> int:
        return len(self._agents)

    def __repr__(self) -> str:
        return f"AgentRegistry({list(self._agents)!r})"
