"""
memory/state_manager.py — State Manager

Owns every AgentState transition and its persistence.

  create_initial_state()  turn 0, no subgoals, empty working memory
  update_state()          new state value, turn_index + 1, memory folded in
  save / load / clear     delegate to a StateStore, with a read-through cache

Working memory is a bounded str → str digest. Keys:
  turn_<n>_summary    observation summary of turn n
  fact_<key>          key facts from observations
  replan, user_query, stop_reason, critique_assessment, known_gaps
  decision_log        bullets for entries compressed out of the digest

When the digest grows past max_memory_entries, everything except the
important keys, the newest turn summaries and the newest facts is folded
into decision_log. Nothing is dropped without a trace.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass
from typing import Optional

from turnpilot.agent.decisions import (
    Action,
    AskUser,
    AskUserAction,
    CallTool,
    CallToolAction,
    Decision,
    Replan,
    ReplanAction,
    Stop,
    StopAction,
)
from turnpilot.agent.types import AgentState, Budget, Critique, Goal, Observation
from turnpilot.agent.utils import await_cancellable
from turnpilot.exceptions import ConfigError, RunCancelledError, StateStoreError
from turnpilot.memory.state_store import InMemoryStateStore, StateStore
from turnpilot.observability.logger import get_logger

log = get_logger(__name__)

IMPORTANT_KEYS = ("stop_reason", "critique_assessment", "known_gaps", "user_query", "replan")
DECISION_LOG_KEY = "decision_log"

_TURN_KEY = re.compile(r"^turn_(\d+)_summary$")
_BULLET_CHARS = 60


@dataclass
class StateOptions:
    max_memory_entries: int = 50
    max_memory_value_length: int = 500
    max_facts_in_memory: int = 10
    max_turn_summaries: int = 5

    def __post_init__(self) -> None:
        if self.retained_floor > self.max_memory_entries:
            raise ConfigError(
                f"max_memory_entries ({self.max_memory_entries}) is smaller than the "
                f"entries kept after compression ({self.retained_floor})"
            )

    @property
    def retained_floor(self) -> int:
        """Entries compression never folds into decision_log, decision_log included."""
        return len(IMPORTANT_KEYS) + 1 + self.max_turn_summaries + self.max_facts_in_memory


def action_for(decision: Decision) -> Action:
    """The pass-through Action for a Decision."""
    if isinstance(decision, CallTool):
        return CallToolAction(call=decision.call)
    if isinstance(decision, AskUser):
        return AskUserAction(question=decision.question, missing_fields=decision.missing_fields)
    if isinstance(decision, Replan):
        return ReplanAction(subgoals=decision.subgoals)
    return StopAction(reason=decision.reason)


class StateManager:
    def __init__(
        self,
        store: Optional[StateStore] = None,
        options: Optional[StateOptions] = None,
    ) -> None:
        self._store = store if store is not None else InMemoryStateStore()
        self.options = options or StateOptions()
        self._cache: dict[str, AgentState] = {}

    # ── Transitions ───────────────────────────────────────────────────────────

    def create_initial_state(
        self, goal: Goal, budget: Budget, run_id: Optional[str] = None
    ) -> AgentState:
        return AgentState(run_id=run_id or uuid.uuid4().hex, goal=goal, budget=budget)

    def update_state(
        self,
        state: AgentState,
        decision: Decision,
        observation: Optional[Observation],
        critique: Optional[Critique],
        action: Optional[Action] = None,
    ) -> AgentState:
        """
        Return the next state. ``state`` is never modified.

        ``action`` is what actually ran this turn (a retry, a fallback, a
        policy stop); it defaults to the pass-through action for ``decision``.
        """
        effective = action if action is not None else action_for(decision)
        memory = dict(state.working_memory)
        subgoals = list(state.subgoals)

        if isinstance(effective, ReplanAction):
            subgoals = list(effective.subgoals)
            self._remember(memory, "replan", f"New subgoals: {', '.join(subgoals)}")
        elif isinstance(effective, AskUserAction):
            self._remember(memory, "user_query", effective.question)
        elif isinstance(effective, StopAction):
            self._remember(memory, "stop_reason", effective.reason)

        if observation is not None:
            self._remember(memory, f"turn_{state.turn_index}_summary", observation.summary)
            facts = list(observation.key_facts.items())[: self.options.max_facts_in_memory]
            for key, value in facts:
                self._remember(memory, f"fact_{key}", value)

        if critique is not None:
            self._remember(memory, "critique_assessment", critique.assessment)
            if critique.known_gaps:
                self._remember(memory, "known_gaps", ", ".join(critique.known_gaps))

        if len(memory) > self.options.max_memory_entries:
            memory = self._compress(memory)

        return AgentState(
            run_id=state.run_id,
            goal=state.goal,
            budget=state.budget,
            subgoals=subgoals,
            last_action=effective,
            last_observation=observation,
            turn_index=state.turn_index + 1,
            working_memory=memory,
            start_time=state.start_time,
        )

    # ── Persistence ───────────────────────────────────────────────────────────

    async def save_state(
        self, state: AgentState, cancel_event: Optional[asyncio.Event] = None
    ) -> None:
        self._cache[state.run_id] = state
        await self._call_store(self._store.save(state.run_id, state), cancel_event, "save")
        log.debug("state.saved", run_id=state.run_id, turn=state.turn_index)

    async def load_state(
        self, run_id: str, cancel_event: Optional[asyncio.Event] = None
    ) -> Optional[AgentState]:
        cached = self._cache.get(run_id)
        if cached is not None:
            return cached
        state = await self._call_store(self._store.load(run_id), cancel_event, "load")
        if state is not None:
            self._cache[run_id] = state
        return state

    async def clear_state(self, run_id: str) -> None:
        self._cache.pop(run_id, None)
        await self._call_store(self._store.clear(run_id), None, "clear")
        log.debug("state.cleared", run_id=run_id)

    async def _call_store(self, awaitable, cancel_event, op: str):
        try:
            return await await_cancellable(awaitable, cancel_event, label=f"state.{op}")
        except (StateStoreError, RunCancelledError):
            raise
        except Exception as e:
            raise StateStoreError(f"State store {op} failed: {e}") from e

    # ── Working memory ────────────────────────────────────────────────────────

    def _cap(self, value: str) -> str:
        limit = self.options.max_memory_value_length
        if len(value) <= limit:
            return value
        return value[: max(limit - 3, 0)] + "..."

    def _remember(self, memory: dict[str, str], key: str, value: str) -> None:
        memory.pop(key, None)           # re-insert so recency follows dict order
        memory[key] = self._cap(value)

    def _compress(self, memory: dict[str, str]) -> dict[str, str]:
        opts = self.options
        turn_keys = sorted(
            (k for k in memory if _TURN_KEY.match(k)),
            key=lambda k: int(_TURN_KEY.match(k).group(1)),
        )
        fact_keys = [k for k in memory if k.startswith("fact_")]

        keep = set(IMPORTANT_KEYS)
        keep.update(turn_keys[-opts.max_turn_summaries:] if opts.max_turn_summaries else [])
        keep.update(fact_keys[-opts.max_facts_in_memory:] if opts.max_facts_in_memory else [])

        compressed: dict[str, str] = {}
        folded: list[str] = []
        for key, value in memory.items():
            if key == DECISION_LOG_KEY:
                continue
            if key in keep:
                compressed[key] = value
            else:
                folded.append(f"- {key}: {_shorten(value)}")

        if folded or DECISION_LOG_KEY in memory:
            compressed[DECISION_LOG_KEY] = self._merge_log(memory.get(DECISION_LOG_KEY, ""), folded)

        log.debug(
            "state.memory_compressed",
            before=len(memory),
            after=len(compressed),
            folded=len(folded),
        )
        return compressed

    def _merge_log(self, existing: str, bullets: list[str]) -> str:
        lines = [line for line in existing.splitlines() if line and not line.startswith("- ... (")]
        elided = _elided_count(existing)
        lines.extend(bullets)

        limit = self.options.max_memory_value_length
        while lines and len(_render_log(lines, elided)) > limit:
            lines.pop(0)
            elided += 1
        return _render_log(lines, elided)


def _shorten(value: str) -> str:
    value = " ".join(value.split())
    return value if len(value) <= _BULLET_CHARS else value[: _BULLET_CHARS - 3] + "..."


_ELIDED_RE = re.compile(r"^- \.\.\. \((\d+) earlier entries elided\)$", re.MULTILINE)


def _elided_count(log_text: str) -> int:
    match = _ELIDED_RE.search(log_text)
    return int(match.group(1)) if match else 0


def _render_log(lines: list[str], elided: int) -> str:
    head = [f"- ... ({elided} earlier entries elided)"] if elided else []
    return "\n".join(head + lines)
