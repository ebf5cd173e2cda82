"""Demo agents: short shell scripts that print a plausible work log."""

from __future__ import annotations

import shlex

from quad.engine.models import AgentConfig, AgentRole, AgentType

DemoStep = tuple[float, str]

PLANNER_SCRIPT: tuple[DemoStep, ...] = (
    (0, "Thinking about the task requirements..."),
    (0.3, "Analyzing existing codebase structure"),
    (0.3, "[1/3] Reading src/auth/login.py"),
    (0.3, "[2/3] Drafting plan for session validation"),
    (0.3, "[3/3] Writing plan to PLAN.md"),
    (0, "Planning complete"),
)

CODER_SCRIPT: tuple[DemoStep, ...] = (
    (0, "Using model: gpt-4 via openai provider"),
    (0.3, "[1/4] Creating src/auth/session.py"),
    (0.3, "[2/4] Editing src/auth/login.py - adding session validation"),
    (0.3, "[3/4] $ pytest tests/test_auth.py"),
    (0.3, "12 passed, 0 failed"),
    (0.3, "[4/4] Writing summary"),
    (0, "Implementation complete"),
)

AUDITOR_SCRIPT: tuple[DemoStep, ...] = (
    (0, "$ git diff --stat"),
    (0.3, " 2 files changed, 87 insertions(+), 12 deletions(-)"),
    (0.3, "Reviewing src/auth/session.py"),
    (0.3, "$ pytest"),
    (0.3, "14 passed, 0 failed, 0 skipped"),
    (0, "Audit passed"),
)


def build_script(steps: tuple[DemoStep, ...] | list[DemoStep]) -> str:
    """Shell command that echoes each line after its delay."""

    parts = []
    for delay, line in steps:
        echo = f"echo {shlex.quote(line)}"
        parts.append(f"sleep {delay:g}; {echo}" if delay > 0 else echo)
    return "; ".join(parts)


def demo_configs() -> list[AgentConfig]:
    return [
        AgentConfig(
            id="demo-planner",
            name="Planner",
            type=AgentType.CLAUDE,
            role=AgentRole.PLANNER,
            command=build_script(PLANNER_SCRIPT),
        ),
        AgentConfig(
            id="demo-coder",
            name="Coder",
            type=AgentType.OPENCODE,
            role=AgentRole.CODER,
            command=build_script(CODER_SCRIPT),
        ),
        AgentConfig(
            id="demo-auditor",
            name="Auditor",
            type=AgentType.CUSTOM,
            role=AgentRole.AUDITOR,
            command=build_script(AUDITOR_SCRIPT),
        ),
    ]
