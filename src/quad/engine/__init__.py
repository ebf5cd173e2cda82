"""Phase loop engine: registry, state machine, orchestrator and driver."""

from quad.engine.driver import LoopDriver, LoopEvent, LoopEventListener, LoopEventType
from quad.engine.models import (
    LOOP_PHASES,
    AgentConfig,
    AgentRole,
    AgentState,
    AgentStatus,
    AgentType,
    LoopPhase,
    LoopState,
    LoopStatus,
    PhaseResult,
)
from quad.engine.registry import AgentRegistry

__all__ = [
    "LOOP_PHASES",
    "AgentConfig",
    "AgentRegistry",
    "AgentRole",
    "AgentState",
    "AgentStatus",
    "AgentType",
    "LoopDriver",
    "LoopEvent",
    "LoopEventListener",
    "LoopEventType",
    "LoopPhase",
    "LoopState",
    "LoopStatus",
    "PhaseResult",
]
