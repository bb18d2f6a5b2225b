"""
agent/types.py — Run Data Models

Value types handed between the planner, policy engine, critic, state manager
and the turn loop. All of them are frozen: a turn produces new values, it
never edits old ones.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from turnpilot.agent.decisions import Action
from turnpilot.tools.types import ToolResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Goal and budget
# ─────────────────────────────────────────────────────────────────────────────


class Goal(BaseModel):
    """What the run must achieve."""
    model_config = ConfigDict(frozen=True)

    text: str
    constraints: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


class Budget(BaseModel):
    """Turn and wall-clock ceiling for one run."""
    model_config = ConfigDict(frozen=True)

    max_turns: int = Field(default=20, ge=1)
    max_wall_clock_seconds: float = Field(default=300.0, gt=0)

    def exhausted(self, turn_index: int, start_time: float, now: Optional[float] = None) -> bool:
        """
        True once either ceiling is reached.

        start_time and now are time.time() values. Pure and monotonic in both
        turn_index and elapsed time.
        """
        if turn_index >= self.max_turns:
            return True
        current = time.time() if now is None else now
        return (current - start_time) >= self.max_wall_clock_seconds

    def remaining_turns(self, turn_index: int) -> int:
        return max(0, self.max_turns - turn_index)


# ─────────────────────────────────────────────────────────────────────────────
# Observation
# ─────────────────────────────────────────────────────────────────────────────


class Observation(BaseModel):
    """Bounded, planner-facing view of one ToolResult."""
    model_config = ConfigDict(frozen=True)

    tool_name: str
    summary: str
    key_facts: dict[str, str] = Field(default_factory=dict)
    affordances: list[str] = Field(default_factory=list)
    raw: Optional[ToolResult] = None

    @property
    def success(self) -> bool:
        return self.raw is not None and self.raw.ok


# ─────────────────────────────────────────────────────────────────────────────
# Policy and critique
# ─────────────────────────────────────────────────────────────────────────────


class ErrorHandlingPolicy(BaseModel):
    """Run-level failure tolerance."""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=2, ge=0)
    base_backoff_seconds: float = Field(default=1.0, ge=0.0)
    use_fallbacks: bool = True
    ask_user_when_missing_fields: bool = True


class CritiqueRecommendation(str, Enum):
    CONTINUE = "continue"
    REPLAN = "replan"
    CLARIFY = "clarify"
    STOP = "stop"


class Critique(BaseModel):
    model_config = ConfigDict(frozen=True)

    goal_satisfied: bool = False
    assessment: str = ""
    known_gaps: list[str] = Field(default_factory=list)
    recommendation: CritiqueRecommendation = CritiqueRecommendation.CONTINUE


# ─────────────────────────────────────────────────────────────────────────────
# State and result
# ─────────────────────────────────────────────────────────────────────────────


class AgentState(BaseModel):
    """Snapshot of a run at a turn boundary."""
    model_config = ConfigDict(frozen=True)

    run_id: str
    goal: Goal
    budget: Budget
    subgoals: list[str] = Field(default_factory=list)
    last_action: Optional[Action] = None
    last_observation: Optional[Observation] = None
    turn_index: int = Field(default=0, ge=0)
    working_memory: dict[str, str] = Field(default_factory=dict)
    start_time: float = Field(default_factory=time.time)

    def budget_exhausted(self, now: Optional[float] = None) -> bool:
        return self.budget.exhausted(self.turn_index, self.start_time, now)


class AgentResult(BaseModel):
    """Terminal outcome of a run. Produced exactly once per run."""
    model_config = ConfigDict(frozen=True)

    run_id: str
    success: bool
    stop_reason: str
    final_state: AgentState
    total_turns: int
    duration_seconds: float
