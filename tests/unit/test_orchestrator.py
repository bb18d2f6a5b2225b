"""
tests/unit/test_orchestrator.py — Agent Turn Loop Unit Tests

Tests every termination condition of the turn loop with a scripted planner
model, a scripted critic and real ToolBus / PolicyEngine / StateManager.

Test groups:
  - Terminal convergence: Stop on turn 1, critic goal_satisfied short-circuit
  - Stop reasons: non-achieved stop, ask user, budget, error, cancellation
  - Failure recovery: transient retry, missing fields escalated to the user
  - Events: lifecycle order, failing listeners isolated
  - State: cleared on exit, replan subgoals carried in the final state
  - from_settings() wiring

Run with:
    pytest tests/unit/test_orchestrator.py -v
"""

from __future__ import annotations

import asyncio
import json
from typing import Callable, Optional

import pytest

from turnpilot.agent.critic import Critic
from turnpilot.agent.events import AgentListener, ToolCalled, TurnCompleted, TurnStarted, UserInputRequested
from turnpilot.agent.normalizer import ObservationNormalizer
from turnpilot.agent.orchestrator import Agent, is_goal_achieved
from turnpilot.agent.planner import Planner
from turnpilot.agent.policy import PolicyEngine
from turnpilot.agent.types import Budget, Critique, CritiqueRecommendation, ErrorHandlingPolicy, Goal, Observation
from turnpilot.brain.llm_client import ScriptedLLMClient
from turnpilot.config.settings import Settings
from turnpilot.exceptions import RetryableToolError
from turnpilot.memory.state_manager import StateManager
from turnpilot.memory.state_store import InMemoryStateStore
from turnpilot.tools.tool_bus import ToolBus
from turnpilot.tools.tool_registry import ToolRegistry
from turnpilot.tools.types import ToolParameter


# ─────────────────────────────────────────────────────────────────────────────
# Shared test helpers
# ─────────────────────────────────────────────────────────────────────────────

CALL_CLOCK = json.dumps({"action": "call_tool", "name": "datetime_tool", "args": {"operation": "now"}})
CALL_CLOCK_NO_ARGS = json.dumps({"action": "call_tool", "name": "datetime_tool", "args": {}})
CALL_FLAKY = json.dumps({"action": "call_tool", "name": "flaky_tool", "args": {}})


def stop(reason: str) -> str:
    return json.dumps({"action": "stop", "reason": reason})


class ScriptedCritic(Critic):
    """Returns verdict(observation); CONTINUE with no goal by default."""

    def __init__(self, verdict: Optional[Callable[[Observation], Critique]] = None):
        self.verdict = verdict or (lambda obs: Critique(assessment="keep going"))
        self.seen: list[Observation] = []

    async def assess(self, goal, observation, cancel_event=None):
        self.seen.append(observation)
        return self.verdict(observation)


def satisfied_on_success(obs: Observation) -> Critique:
    return Critique(goal_satisfied=obs.success, assessment="checked")


class Recorder(AgentListener):
    def __init__(self):
        self.events = []

    def on_turn_started(self, event):
        self.events.append(event)

    def on_turn_completed(self, event):
        self.events.append(event)

    def on_tool_called(self, event):
        self.events.append(event)

    def on_user_input_requested(self, event):
        self.events.append(event)


class Exploding(AgentListener):
    def on_turn_started(self, event):
        raise RuntimeError("listener bug")

    def on_turn_completed(self, event):
        raise RuntimeError("listener bug")


class RecordingStore(InMemoryStateStore):
    """Keeps the run id and turn index of every save, and every clear."""

    def __init__(self):
        super().__init__()
        self.saved = []
        self.cleared = []

    async def save(self, run_id, state):
        self.saved.append((run_id, state.turn_index))
        await super().save(run_id, state)

    async def clear(self, run_id):
        self.cleared.append(run_id)
        await super().clear(run_id)


@pytest.fixture
def registry():
    reg = ToolRegistry()
    flaky_calls = []

    @reg.register(
        name="datetime_tool",
        description="Current date and time",
        parameters=[ToolParameter(name="operation", required=True, allowed_values=["now", "today"])],
    )
    async def datetime_tool(operation: str) -> dict:
        return {"iso": "2024-01-01T00:00:00Z", "operation": operation}

    @reg.register(name="flaky_tool", description="Fails once, then works")
    async def flaky_tool() -> dict:
        flaky_calls.append(1)
        if len(flaky_calls) == 1:
            raise RetryableToolError("server busy")
        return {"value": len(flaky_calls)}

    reg.flaky_calls = flaky_calls
    return reg


def build_agent(registry, planner_replies, critic=None, store=None, listeners=()):
    return Agent(
        planner=Planner(ScriptedLLMClient(planner_replies), registry),
        bus=ToolBus(registry, default_timeout_seconds=2.0),
        critic=critic or ScriptedCritic(),
        normalizer=ObservationNormalizer(registry=registry),
        policy_engine=PolicyEngine(registry),
        state_manager=StateManager(store),
        listeners=listeners,
    )


NO_WAIT = ErrorHandlingPolicy(base_backoff_seconds=0)


# ─────────────────────────────────────────────────────────────────────────────
# Terminal convergence
# ─────────────────────────────────────────────────────────────────────────────


class TestConvergence:
    @pytest.mark.asyncio
    async def test_stop_goal_achieved_on_turn_one(self, registry):
        agent = build_agent(registry, [stop("goal achieved")])
        result = await agent.run(Goal(text="say hi"))
        assert result.success is True
        assert result.total_turns == 1
        assert result.stop_reason == "goal achieved"
        assert result.final_state.turn_index == 1

    @pytest.mark.asyncio
    async def test_critic_goal_satisfied_short_circuits(self, registry):
        critic = ScriptedCritic(satisfied_on_success)
        agent = build_agent(registry, [CALL_CLOCK, stop("never reached")], critic=critic)

        result = await agent.run("What time is it?")

        assert result.success
        assert result.stop_reason == "Goal achieved"
        assert result.total_turns == 1
        assert critic.seen[0].key_facts["iso"] == "2024-01-01T00:00:00Z"
        assert result.final_state.working_memory["fact_iso"] == "2024-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_critic_stop_recommendation_ends_run(self, registry):
        critic = ScriptedCritic(lambda obs: Critique(
            assessment="Nothing more can be done", recommendation=CritiqueRecommendation.STOP))
        result = await build_agent(registry, [CALL_CLOCK], critic=critic).run("x")
        assert not result.success
        assert result.stop_reason == "Nothing more can be done"

    @pytest.mark.asyncio
    async def test_tool_then_stop(self, registry):
        agent = build_agent(registry, [CALL_CLOCK, stop("Task completed")])
        result = await agent.run("What time is it?")
        assert result.success is False
        assert result.stop_reason == "Task completed"
        assert result.total_turns == 2

    def test_is_goal_achieved(self):
        assert is_goal_achieved("Goal ACHIEVED: time reported")
        assert not is_goal_achieved("Task completed")


# ─────────────────────────────────────────────────────────────────────────────
# Stop reasons
# ─────────────────────────────────────────────────────────────────────────────


class TestStopReasons:
    @pytest.mark.asyncio
    async def test_ask_user(self, registry):
        rec = Recorder()
        reply = json.dumps({"action": "ask_user", "question": "Which city?", "missing_fields": ["city"]})
        result = await build_agent(registry, [reply], listeners=[rec]).run("weather")

        assert not result.success
        assert result.stop_reason == "User input required"
        assert result.total_turns == 1
        asks = [e for e in rec.events if isinstance(e, UserInputRequested)]
        assert asks[0].question == "Which city?"
        assert asks[0].missing_fields == ["city"]

    @pytest.mark.asyncio
    async def test_budget_exhausted(self, registry):
        agent = build_agent(registry, [CALL_CLOCK])
        result = await agent.run("loop forever", Budget(max_turns=3))
        assert not result.success
        assert result.stop_reason == "Budget exhausted"
        assert result.total_turns == 3

    @pytest.mark.asyncio
    async def test_planner_error_ends_run(self, registry):
        agent = build_agent(registry, ['{"invalid": "format"}'])
        result = await agent.run("x")
        assert not result.success
        assert result.stop_reason.startswith("Error: ")
        assert result.total_turns == 1
        assert result.final_state.working_memory["stop_reason"] == result.stop_reason

    @pytest.mark.asyncio
    async def test_critic_exception_ends_run(self, registry):
        class BrokenCritic(Critic):
            async def assess(self, goal, observation, cancel_event=None):
                raise ValueError("critic exploded")

        result = await build_agent(registry, [CALL_CLOCK], critic=BrokenCritic()).run("x")
        assert result.stop_reason == "Error: critic exploded"
        assert not result.success

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, registry):
        cancel = asyncio.Event()
        cancel.set()
        result = await build_agent(registry, [CALL_CLOCK]).run("x", cancel_event=cancel)
        assert result.stop_reason == "Cancelled by user"
        assert result.total_turns == 0
        assert not result.success

    @pytest.mark.asyncio
    async def test_cancelled_during_tool_call(self, registry):
        @registry.register(name="slow_tool")
        async def slow_tool() -> dict:
            await asyncio.sleep(5)
            return {}

        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        reply = json.dumps({"action": "call_tool", "name": "slow_tool", "args": {}})

        result = await build_agent(registry, [reply]).run("x", cancel_event=cancel)

        assert result.stop_reason == "Cancelled by user"
        assert not result.success
        assert result.duration_seconds < 5


# ─────────────────────────────────────────────────────────────────────────────
# Failure recovery
# ─────────────────────────────────────────────────────────────────────────────


class TestRecovery:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, registry):
        rec = Recorder()
        critic = ScriptedCritic(satisfied_on_success)
        agent = build_agent(registry, [CALL_FLAKY], critic=critic, listeners=[rec])

        result = await agent.run("use flaky", error_policy=NO_WAIT)

        assert result.success
        assert result.total_turns == 2
        assert len(registry.flaky_calls) == 2
        assert critic.seen[0].raw.error_code.value == "retryable_server"
        assert critic.seen[1].raw.attempt == 2
        calls = [e for e in rec.events if isinstance(e, ToolCalled)]
        assert [c.ok for c in calls] == [False, True]

    @pytest.mark.asyncio
    async def test_missing_field_escalates_to_user(self, registry):
        rec = Recorder()
        agent = build_agent(registry, [CALL_CLOCK_NO_ARGS], listeners=[rec])

        result = await agent.run("what time", error_policy=NO_WAIT)

        assert result.stop_reason == "User input required"
        assert result.total_turns == 2
        asks = [e for e in rec.events if isinstance(e, UserInputRequested)]
        assert asks[0].missing_fields == ["operation"]


# ─────────────────────────────────────────────────────────────────────────────
# Events and state
# ─────────────────────────────────────────────────────────────────────────────


class TestEventsAndState:
    @pytest.mark.asyncio
    async def test_lifecycle_event_order(self, registry):
        rec = Recorder()
        agent = build_agent(registry, [CALL_CLOCK, stop("Goal achieved")], listeners=[rec])
        await agent.run("x")
        assert [type(e) for e in rec.events] == [
            TurnStarted, ToolCalled, TurnCompleted, TurnStarted, TurnCompleted,
        ]
        assert [e.turn_number for e in rec.events if isinstance(e, TurnStarted)] == [1, 2]
        completed = [e for e in rec.events if isinstance(e, TurnCompleted)]
        assert [e.action_type for e in completed] == ["call_tool", "stop"]

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, registry):
        rec = Recorder()
        agent = build_agent(registry, [stop("goal achieved")], listeners=[Exploding(), rec])
        result = await agent.run("x")
        assert result.success
        assert len(rec.events) == 2

    @pytest.mark.asyncio
    async def test_listeners_can_be_added_and_removed(self, registry):
        rec = Recorder()
        agent = build_agent(registry, [stop("goal achieved")])
        agent.add_listener(rec)
        agent.remove_listener(rec)
        await agent.run("x")
        assert rec.events == []

    @pytest.mark.asyncio
    async def test_every_turn_is_persisted_then_cleared(self, registry):
        store = RecordingStore()
        agent = build_agent(registry, [CALL_CLOCK, stop("goal achieved")], store=store)
        result = await agent.run("x", run_id="run-42")

        assert result.run_id == "run-42"
        assert result.total_turns == 2
        assert store.saved == [("run-42", 0), ("run-42", 1), ("run-42", 2)]
        assert store.cleared == ["run-42"]
        assert "run-42" not in store

    @pytest.mark.asyncio
    async def test_state_cleared_when_run_is_cancelled(self, registry):
        store = RecordingStore()
        cancel = asyncio.Event()
        cancel.set()
        result = await build_agent(registry, [stop("goal achieved")], store=store).run(
            "x", cancel_event=cancel, run_id="run-7"
        )
        assert not result.success
        assert store.cleared == ["run-7"]

    @pytest.mark.asyncio
    async def test_replan_then_stop(self, registry):
        replan = json.dumps({"action": "replan", "subgoals": ["check clock", "report"]})
        result = await build_agent(registry, [replan, stop("goal achieved")]).run("x")
        assert result.success
        assert result.total_turns == 2
        assert result.final_state.subgoals == ["check clock", "report"]


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_from_settings_runs(self, registry):
        settings = Settings(agent={"max_turns": 4})
        llm = ScriptedLLMClient([
            CALL_CLOCK,
            '{"goal_satisfied": true, "assessment": "Time reported"}',
        ])
        agent = Agent.from_settings(settings, llm, registry)

        result = await agent.run(
            "What time is it?", settings.budget(), settings.error_handling_policy()
        )

        assert result.success
        assert result.stop_reason == "Goal achieved"
        assert llm.configs[0].max_tokens == settings.planner.max_tokens
        assert llm.configs[1].max_tokens == settings.critic.max_tokens

    @pytest.mark.asyncio
    async def test_from_settings_uses_given_store(self, registry):
        store = RecordingStore()
        llm = ScriptedLLMClient([stop("goal achieved")])
        agent = Agent.from_settings(Settings(), llm, registry, state_store=store)

        result = await agent.run("x", run_id="run-9")

        assert result.success
        assert store.saved == [("run-9", 0), ("run-9", 1)]
        assert store.cleared == ["run-9"]
