"""
agent/decisions.py — Planner Decisions and Resolved Actions

Two closed sets of frozen value types:
  Decision: what the planner chose (CallTool | AskUser | Stop | Replan)
  Action:   what the PolicyEngine approved for execution
             (CallToolAction | AskUserAction | StopAction | ReplanAction)

Both are pydantic discriminated unions on the ``kind`` field. The field holds
the plain string value; DecisionKind and ActionType name the closed sets.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from turnpilot.tools.types import ToolCall


class DecisionKind(str, Enum):
    CALL_TOOL = "call_tool"
    ASK_USER = "ask_user"
    REPLAN = "replan"
    STOP = "stop"


class ActionType(str, Enum):
    CALL_TOOL = "call_tool"
    ASK_USER = "ask_user"
    REPLAN = "replan"
    STOP = "stop"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ─────────────────────────────────────────────────────────────────────────────
# Decisions
# ─────────────────────────────────────────────────────────────────────────────


class CallTool(_Frozen):
    kind: Literal["call_tool"] = "call_tool"
    call: ToolCall


class AskUser(_Frozen):
    kind: Literal["ask_user"] = "ask_user"
    question: str
    missing_fields: list[str] = Field(default_factory=list)


class Stop(_Frozen):
    kind: Literal["stop"] = "stop"
    reason: str


class Replan(_Frozen):
    kind: Literal["replan"] = "replan"
    subgoals: list[str] = Field(default_factory=list)


Decision = Annotated[Union[CallTool, AskUser, Stop, Replan], Field(discriminator="kind")]


# ─────────────────────────────────────────────────────────────────────────────
# Actions
# ─────────────────────────────────────────────────────────────────────────────


class CallToolAction(_Frozen):
    kind: Literal["call_tool"] = "call_tool"
    call: ToolCall
    retry_attempt: int = Field(default=1, ge=1)
    wait_seconds: float = Field(default=0.0, ge=0.0)


class AskUserAction(_Frozen):
    kind: Literal["ask_user"] = "ask_user"
    question: str
    missing_fields: list[str] = Field(default_factory=list)


class StopAction(_Frozen):
    kind: Literal["stop"] = "stop"
    reason: str


class ReplanAction(_Frozen):
    kind: Literal["replan"] = "replan"
    subgoals: list[str] = Field(default_factory=list)


Action = Annotated[
    Union[CallToolAction, AskUserAction, StopAction, ReplanAction],
    Field(discriminator="kind"),
]
