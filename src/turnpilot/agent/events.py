"""
agent/events.py — Run Lifecycle Events

Observer hooks the turn loop publishes to. Purely for observability and UI:
the run behaves identically with zero listeners, and a listener that raises
is logged and skipped, never allowed to abort a turn.

Listeners subclass AgentListener and override the hooks they care about.
A hook may be a plain method or a coroutine; coroutines are scheduled in the
background and not awaited by the loop.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Union

from turnpilot.agent.utils import fire_and_forget
from turnpilot.observability.logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class TurnStarted:
    run_id: str
    turn_number: int


@dataclass(frozen=True)
class TurnCompleted:
    run_id: str
    turn_number: int
    duration_ms: float
    action_type: str


@dataclass(frozen=True)
class ToolCalled:
    run_id: str
    tool_name: str
    result_summary: str
    ok: bool = True


@dataclass(frozen=True)
class UserInputRequested:
    run_id: str
    question: str
    missing_fields: list[str] = field(default_factory=list)


AgentEvent = Union[TurnStarted, TurnCompleted, ToolCalled, UserInputRequested]


class AgentListener:
    """No-op base. Override any subset of the hooks."""

    def on_turn_started(self, event: TurnStarted) -> None:
        pass

    def on_turn_completed(self, event: TurnCompleted) -> None:
        pass

    def on_tool_called(self, event: ToolCalled) -> None:
        pass

    def on_user_input_requested(self, event: UserInputRequested) -> None:
        pass


_HOOKS = {
    TurnStarted: "on_turn_started",
    TurnCompleted: "on_turn_completed",
    ToolCalled: "on_tool_called",
    UserInputRequested: "on_user_input_requested",
}


class EventEmitter:
    def __init__(self, listeners=()) -> None:
        self._listeners: list[AgentListener] = list(listeners)

    @property
    def listeners(self) -> list[AgentListener]:
        return list(self._listeners)

    def add(self, listener: AgentListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove(self, listener: AgentListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: AgentEvent) -> None:
        hook_name = _HOOKS[type(event)]
        for listener in list(self._listeners):
            hook = getattr(listener, hook_name, None)
            if hook is None:
                continue
            try:
                outcome = hook(event)
                if inspect.isawaitable(outcome):
                    fire_and_forget(outcome, label=f"listener.{hook_name}")
            except Exception as e:
                log.warning(
                    "events.listener_failed",
                    hook=hook_name,
                    listener=type(listener).__name__,
                    error=str(e),
                    error_type=type(e).__name__,
                )
