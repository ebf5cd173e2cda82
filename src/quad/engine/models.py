"""Domain models for agents and the phase loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AgentStatus(str, Enum):
    """Lifecycle states of one supervised agent process."""

    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"
    ERROR = "error"


class AgentRole(str, Enum):
    """Agent role; determines the loop phase the agent belongs to."""

    PLANNER = "planner"
    CODER = "coder"
    AUDITOR = "auditor"
    REVIEWER = "reviewer"
    CUSTOM = "custom"


class AgentType(str, Enum):
    """Kind of CLI tool behind the agent."""

    CLAUDE = "claude"
    OPENCODE = "opencode"
    CUSTOM = "custom"


class LoopPhase(str, Enum):
    """Loop phases. ``IDLE`` is only used before the loop starts."""

    IDLE = "idle"
    PLAN = "plan"
    CODE = "code"
    AUDIT = "audit"
    PUSH = "push"


LOOP_PHASES: tuple[LoopPhase, ...] = (
    LoopPhase.PLAN,
    LoopPhase.CODE,
    LoopPhase.AUDIT,
    LoopPhase.PUSH,
)


class PhaseResult(str, Enum):
    """Outcome of one phase within the current cycle."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class LoopStatus(str, Enum):
    """Overall loop status."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class AgentConfig:
    """Static description of an agent: what to run and which role it plays."""

    id: str
    name: str
    type: AgentType = AgentType.CUSTOM
    role: AgentRole = AgentRole.CUSTOM
    command: str = ""
    args: tuple[str, ...] = ()
    task: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize config for JSON transport."""

        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "role": self.role.value,
            "command": self.command,
            "args": list(self.args),
        }


@dataclass(frozen=True, slots=True)
class AgentState:
    """Runtime view of one agent as held by the registry."""

    config: AgentConfig
    status: AgentStatus = AgentStatus.IDLE
    output: tuple[str, ...] = ()
    pid: int | None = None
    started_at: datetime | None = None
    error: str | None = None
    restart_count: int = 0

    @property
    def id(self) -> str:
        return self.config.id


def pending_phase_results() -> dict[LoopPhase, PhaseResult]:
    """Fresh results map with every active phase pending."""

    return {phase: PhaseResult.PENDING for phase in LOOP_PHASES}


@dataclass(frozen=True, slots=True)
class LoopState:
    """Snapshot of the loop engine. Treated as immutable by every reducer."""

    current_phase: LoopPhase = LoopPhase.IDLE
    cycle_count: int = 0
    phase_started_at: datetime | None = None
    status: LoopStatus = LoopStatus.IDLE
    phase_results: dict[LoopPhase, PhaseResult] = field(default_factory=pending_phase_results)
