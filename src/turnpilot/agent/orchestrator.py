"""
agent/orchestrator.py — Agent Turn Loop

Runs one goal to completion. Each turn:
    1. Planner.decide(state)                → Decision
    2. PolicyEngine.resolve(...)            → Action
    3. Execute the action
         CallToolAction  → backoff wait → ToolBus → ObservationNormalizer → Critic
         AskUserAction   → run ends, "User input required", success=False
         StopAction      → run ends, success iff the reason says "achieved"
         ReplanAction    → subgoals replaced, run continues
    4. StateManager.update_state(...)       → next state, persisted

The loop exits when a turn stops the run, the budget is exhausted, or the
cancel event is set. An exception inside a turn is logged and ends the run
with the exception message as stop reason. Run state is always cleared on exit.

Usage:
    agent = Agent.from_settings(settings, llm_client, registry)
    result = await agent.run(Goal(text="What time is it?"), settings.budget(),
                             settings.error_handling_policy())
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from turnpilot.agent.critic import Critic, CriticOptions, DEFAULT_CRITIC_PROMPT, LlmCritic
from turnpilot.agent.decisions import (
    AskUserAction,
    CallToolAction,
    ReplanAction,
    Stop,
    StopAction,
)
from turnpilot.agent.events import (
    AgentListener,
    EventEmitter,
    ToolCalled,
    TurnCompleted,
    TurnStarted,
    UserInputRequested,
)
from turnpilot.agent.normalizer import NormalizerOptions, ObservationNormalizer
from turnpilot.agent.planner import DEFAULT_SYSTEM_PROMPT, Planner, PlannerOptions
from turnpilot.agent.policy import PolicyEngine
from turnpilot.agent.types import (
    AgentResult,
    AgentState,
    Budget,
    Critique,
    CritiqueRecommendation,
    ErrorHandlingPolicy,
    Goal,
    Observation,
)
from turnpilot.agent.utils import cancellable_sleep
from turnpilot.brain.llm_client import BaseLLMClient
from turnpilot.exceptions import RunCancelledError, StateStoreError
from turnpilot.memory.state_manager import StateManager, StateOptions
from turnpilot.memory.state_store import StateStore
from turnpilot.observability.logger import bind_run, clear_run, get_logger
from turnpilot.tools.executor import ToolExecutor
from turnpilot.tools.output_limiter import OutputLimiter
from turnpilot.tools.tool_bus import ToolBus
from turnpilot.tools.tool_registry import ToolRegistry

log = get_logger(__name__)

STOP_BUDGET = "Budget exhausted"
STOP_CANCELLED = "Cancelled by user"
STOP_USER_INPUT = "User input required"
STOP_GOAL_ACHIEVED = "Goal achieved"


def is_goal_achieved(reason: str) -> bool:
    """A stop reason counts as success when it mentions 'achieved', in any case."""
    return "achieved" in reason.lower()


@dataclass
class _TurnOutcome:
    state: AgentState
    stop_reason: Optional[str] = None
    success: bool = False


class Agent:
    """
    Composes planner, policy engine, tool bus, normalizer, critic and state
    manager into the run-to-completion loop.

    One Agent may serve many concurrent runs; per-run data lives in AgentState.
    """

    def __init__(
        self,
        planner: Planner,
        bus: ToolBus,
        critic: Critic,
        normalizer: ObservationNormalizer,
        policy_engine: PolicyEngine,
        state_manager: StateManager,
        listeners: Iterable[AgentListener] = (),
    ) -> None:
        self._planner = planner
        self._bus = bus
        self._critic = critic
        self._normalizer = normalizer
        self._policy = policy_engine
        self._state = state_manager
        self._events = EventEmitter(listeners)

    def add_listener(self, listener: AgentListener) -> None:
        self._events.add(listener)

    def remove_listener(self, listener: AgentListener) -> None:
        self._events.remove(listener)

    # ─────────────────────────────────────────────────────────────────────────
    # Public: run
    # ─────────────────────────────────────────────────────────────────────────

    async def run(
        self,
        goal: Union[Goal, str],
        budget: Optional[Budget] = None,
        error_policy: Optional[ErrorHandlingPolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
        run_id: Optional[str] = None,
    ) -> AgentResult:
        """Run the goal to a terminal AgentResult. Never raises for run failures."""
        if isinstance(goal, str):
            goal = Goal(text=goal)
        budget = budget or Budget()
        policy = error_policy or ErrorHandlingPolicy()
        cancel_event = cancel_event or asyncio.Event()

        state = self._state.create_initial_state(goal, budget, run_id)
        run_id = state.run_id
        bind_run(run_id)
        t0 = time.monotonic()
        stop_reason = STOP_BUDGET
        success = False

        log.info(
            "agent.run_start",
            goal=goal.text[:120],
            max_turns=budget.max_turns,
            max_wall_clock_seconds=budget.max_wall_clock_seconds,
        )

        try:
            await self._state.save_state(state, cancel_event)
            while True:
                if cancel_event.is_set():
                    stop_reason = STOP_CANCELLED
                    break
                if state.budget_exhausted():
                    stop_reason = STOP_BUDGET
                    break

                outcome = await self._run_turn(state, policy, cancel_event)
                state = outcome.state
                if outcome.stop_reason is not None:
                    stop_reason, success = outcome.stop_reason, outcome.success
                    break

        except RunCancelledError:
            log.info("agent.run_cancelled", turn=state.turn_index)
            stop_reason, success = STOP_CANCELLED, False
        except StateStoreError as e:
            log.error("agent.state_store_error", error=str(e), exc_info=True)
            stop_reason, success = f"Error: {e}", False
        finally:
            try:
                await self._state.clear_state(run_id)
            except StateStoreError as e:
                log.error("agent.state_clear_failed", error=str(e), exc_info=True)
            clear_run()

        duration = time.monotonic() - t0
        log.info(
            "agent.run_done",
            run_id=run_id,
            success=success,
            stop_reason=stop_reason,
            turns=state.turn_index,
            duration_s=round(duration, 3),
        )
        return AgentResult(
            run_id=run_id,
            success=success,
            stop_reason=stop_reason,
            final_state=state,
            total_turns=state.turn_index,
            duration_seconds=duration,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Internal: one turn
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_turn(
        self,
        state: AgentState,
        policy: ErrorHandlingPolicy,
        cancel_event: asyncio.Event,
    ) -> _TurnOutcome:
        run_id = state.run_id
        turn = state.turn_index + 1
        t0 = time.monotonic()
        action_type = "none"
        self._events.emit(TurnStarted(run_id=run_id, turn_number=turn))
        log.debug("agent.turn_start", turn=turn)

        try:
            decision = await self._planner.decide(state, cancel_event)
            action = self._policy.resolve(decision, state.last_observation, policy, state)
            action_type = action.kind

            observation: Optional[Observation] = None
            critique: Optional[Critique] = None
            stop_reason: Optional[str] = None
            success = False

            if isinstance(action, CallToolAction):
                observation, critique = await self._call_tool(state, action, cancel_event)
                if critique.goal_satisfied:
                    stop_reason, success = STOP_GOAL_ACHIEVED, True
                elif critique.recommendation is CritiqueRecommendation.STOP:
                    stop_reason = critique.assessment or "Critic recommended stopping"

            elif isinstance(action, AskUserAction):
                self._events.emit(UserInputRequested(
                    run_id=run_id,
                    question=action.question,
                    missing_fields=list(action.missing_fields),
                ))
                stop_reason = STOP_USER_INPUT

            elif isinstance(action, StopAction):
                stop_reason = action.reason
                success = is_goal_achieved(action.reason)

            elif isinstance(action, ReplanAction):
                log.info("agent.replan", turn=turn, subgoals=action.subgoals)

            next_state = self._state.update_state(
                state, decision, observation, critique, action=action
            )
            await self._state.save_state(next_state, cancel_event)

        except RunCancelledError:
            raise
        except Exception as e:
            log.error(
                "agent.turn_error",
                turn=turn,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            stop_reason, success = f"Error: {e}", False
            error_stop = StopAction(reason=stop_reason)
            action_type = error_stop.kind
            next_state = self._state.update_state(
                state, Stop(reason=stop_reason), None, None, action=error_stop
            )
        finally:
            self._events.emit(TurnCompleted(
                run_id=run_id,
                turn_number=turn,
                duration_ms=round((time.monotonic() - t0) * 1000, 2),
                action_type=action_type,
            ))

        log.info("agent.turn_done", turn=turn, action=action_type, stop_reason=stop_reason)
        return _TurnOutcome(state=next_state, stop_reason=stop_reason, success=success)

    async def _call_tool(
        self,
        state: AgentState,
        action: CallToolAction,
        cancel_event: asyncio.Event,
    ) -> tuple[Observation, Critique]:
        await cancellable_sleep(action.wait_seconds, cancel_event)

        result = await self._bus.execute(
            action.call, attempt=action.retry_attempt, cancel_event=cancel_event
        )
        if cancel_event.is_set():
            raise RunCancelledError("run cancelled during tool call")

        observation = self._normalizer.normalize(action.call.tool_name, result.data, result)
        self._events.emit(ToolCalled(
            run_id=state.run_id,
            tool_name=action.call.tool_name,
            result_summary=observation.summary,
            ok=result.ok,
        ))

        critique = await self._critic.assess(state.goal, observation, cancel_event)
        return observation, critique

    # ─────────────────────────────────────────────────────────────────────────
    # Factory
    # ─────────────────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings,
        llm_client: BaseLLMClient,
        registry: ToolRegistry,
        executor: Optional[ToolExecutor] = None,
        state_store: Optional[StateStore] = None,
        output_limiter: Optional[OutputLimiter] = None,
        listeners: Iterable[AgentListener] = (),
    ) -> "Agent":
        """Wire the default collaborators from a Settings instance."""
        bus = ToolBus(
            registry,
            executor=executor,
            default_timeout_seconds=settings.tools.default_timeout_seconds,
            repair_output=settings.tools.repair_output,
            working_directory=settings.tools.working_dir,
            max_result_chars=settings.tools.max_result_chars,
            output_limiter=output_limiter,
        )
        planner = Planner(
            llm_client,
            registry,
            PlannerOptions(
                model=settings.planner.model,
                max_tokens=settings.planner.max_tokens,
                temperature=settings.planner.temperature,
                system_prompt=settings.planner.system_prompt or DEFAULT_SYSTEM_PROMPT,
            ),
        )
        critic = LlmCritic(
            llm_client,
            CriticOptions(
                model=settings.critic.model,
                max_tokens=settings.critic.max_tokens,
                temperature=settings.critic.temperature,
                system_prompt=settings.critic.system_prompt or DEFAULT_CRITIC_PROMPT,
            ),
        )
        normalizer = ObservationNormalizer(
            NormalizerOptions(**settings.normalizer.model_dump()),
            output_limiter=output_limiter,
            registry=registry,
        )
        state_manager = StateManager(state_store, StateOptions(**settings.state.model_dump()))
        return cls(
            planner=planner,
            bus=bus,
            critic=critic,
            normalizer=normalizer,
            policy_engine=PolicyEngine(registry),
            state_manager=state_manager,
            listeners=listeners,
        )
