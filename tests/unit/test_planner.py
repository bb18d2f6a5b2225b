"""
tests/unit/test_planner.py — Decision Parser Unit Tests

Tests the canonical decision shapes, the alternate shapes models emit,
code fence handling and the Planner's model-call boundary.

Run with:
    pytest tests/unit/test_planner.py -v
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from turnpilot.agent.decisions import AskUser, CallTool, DecisionKind, Replan, Stop
from turnpilot.agent.planner import (
    Planner,
    PlannerOptions,
    inject_default_args,
    normalize_tool_name,
    parse_decision,
    parse_response,
    strip_code_fence,
)
from turnpilot.agent.types import AgentState, Budget, Goal, Observation
from turnpilot.brain.llm_client import ScriptedLLMClient
from turnpilot.brain.types import LLMResponse
from turnpilot.exceptions import (
    DecisionParseError,
    LLMConnectionError,
    PlanError,
    RunCancelledError,
)
from turnpilot.tools.tool_registry import ToolRegistry
from turnpilot.tools.types import ToolCall, ToolParameter, ToolSpec


def make_state(**kwargs) -> AgentState:
    defaults = dict(run_id="run-1", goal=Goal(text="What time is it?"), budget=Budget())
    defaults.update(kwargs)
    return AgentState(**defaults)


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register_tool(
        ToolSpec(
            name="datetime_tool",
            description="Current date and time",
            parameters=[ToolParameter(name="operation", required=True, allowed_values=["now", "today"])],
            display_name="Clock Reader",
        )
    )
    return reg


# ─────────────────────────────────────────────────────────────────────────────
# Canonical shapes
# ─────────────────────────────────────────────────────────────────────────────


class TestCanonicalShapes:
    def test_call_tool(self):
        d = parse_decision({"action": "call_tool", "name": "search", "args": {"q": "x", "n": 3}})
        assert isinstance(d, CallTool)
        assert d.call == ToolCall(tool_name="search", args={"q": "x", "n": 3})

    def test_call_tool_name_is_not_normalised(self):
        d = parse_decision({"action": "call_tool", "name": "Date Time Tool", "args": {}})
        assert d.call.tool_name == "Date Time Tool"
        assert d.call.args == {}

    def test_ask_user(self):
        d = parse_decision({"action": "ask_user", "question": "Which city?", "missing_fields": ["city"]})
        assert d == AskUser(question="Which city?", missing_fields=["city"])

    def test_ask_user_without_missing_fields(self):
        d = parse_decision({"action": "ask_user", "question": "Which city?"})
        assert isinstance(d, AskUser)
        assert d.missing_fields == []

    def test_replan(self):
        d = parse_decision({"action": "replan", "subgoals": ["find flights", "book hotel"]})
        assert d == Replan(subgoals=["find flights", "book hotel"])

    def test_stop(self):
        d = parse_decision({"action": "stop", "reason": "Task completed"})
        assert d == Stop(reason="Task completed")
        assert d.kind == DecisionKind.STOP

    def test_stop_without_reason_gets_default(self):
        assert parse_decision({"action": "stop"}) == Stop(reason="Task completed")

    @pytest.mark.parametrize(
        "payload",
        [
            {"action": "call_tool", "args": {}},
            {"action": "call_tool", "name": "", "args": {}},
            {"action": "call_tool", "name": "search"},
            {"action": "call_tool", "name": "search", "args": "q=x"},
            {"action": "ask_user"},
            {"action": "replan"},
            {"action": "replan", "subgoals": "one"},
            {"action": "dance"},
        ],
    )
    def test_malformed_action_raises(self, payload):
        with pytest.raises(DecisionParseError):
            parse_decision(payload)


# ─────────────────────────────────────────────────────────────────────────────
# Alternate shapes
# ─────────────────────────────────────────────────────────────────────────────


class TestFallbackShapes:
    def test_display_label_maps_to_id_with_default_args(self):
        d = parse_decision({"call_tool": {"name": "Date Time Tool", "args": {}}})
        assert d == CallTool(call=ToolCall(tool_name="datetime_tool", args={"operation": "now"}))

    def test_unknown_label_is_snake_cased_and_args_kept(self):
        d = parse_decision({"call_tool": {"name": "Some Custom Tool", "args": {"param": "value"}}})
        assert d.call.tool_name == "some_custom_tool"
        assert d.call.args == {"param": "value"}

    def test_registry_aliases_win(self):
        d = parse_decision({"call_tool": {"name": "clock reader"}}, aliases={"clock reader": "datetime_tool"})
        assert d.call.tool_name == "datetime_tool"
        assert d.call.args == {"operation": "now"}

    def test_stop_object(self):
        assert parse_decision({"stop": {"reason": "done"}}) == Stop(reason="done")

    def test_ask_user_with_no_missing_fields_is_completion(self):
        d = parse_decision({"ask_user": {"question": "Hello! How can I help?", "missing_fields": []}})
        assert d == Stop(reason="Hello! How can I help?")

    def test_ask_user_with_missing_fields_stays_a_question(self):
        d = parse_decision({"ask_user": {"question": "Which city?", "missing_fields": ["city"]}})
        assert d == AskUser(question="Which city?", missing_fields=["city"])

    def test_missing_action_is_fatal(self):
        with pytest.raises(DecisionParseError) as exc_info:
            parse_decision({"invalid": "format"})
        assert exc_info.value.payload == {"invalid": "format"}

    def test_non_object_is_fatal(self):
        with pytest.raises(DecisionParseError):
            parse_decision(["action", "stop"])


# ─────────────────────────────────────────────────────────────────────────────
# Text helpers
# ─────────────────────────────────────────────────────────────────────────────


class TestTextHelpers:
    def test_strip_json_fence(self):
        assert strip_code_fence('```json\n{"action": "stop"}\n```') == '{"action": "stop"}'

    def test_strip_bare_fence(self):
        assert strip_code_fence('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_no_fence_is_untouched(self):
        assert strip_code_fence('  {"a": 1} ') == '{"a": 1}'

    def test_parse_response_with_fence(self):
        d = parse_response('```json\n{"action": "stop", "reason": "ok"}\n```')
        assert d == Stop(reason="ok")

    def test_parse_response_invalid_json(self):
        with pytest.raises(DecisionParseError):
            parse_response("I think we should stop now.")

    def test_normalize_tool_name(self):
        assert normalize_tool_name("  Web   Search ") == "web_search"
        assert normalize_tool_name("DateTime Tool") == "datetime_tool"

    def test_inject_default_args_keeps_given_args(self):
        assert inject_default_args("datetime_tool", {"operation": "today"}) == {"operation": "today"}
        assert inject_default_args("other_tool", {}) == {}
        assert inject_default_args("x", None, defaults={"x": {"k": 1}}) == {"k": 1}


# ─────────────────────────────────────────────────────────────────────────────
# Planner
# ─────────────────────────────────────────────────────────────────────────────


class TestPlanner:
    @pytest.mark.asyncio
    async def test_decide_parses_reply(self, registry):
        llm = ScriptedLLMClient([json.dumps({"action": "call_tool", "name": "datetime_tool",
                                             "args": {"operation": "now"}})])
        planner = Planner(llm, registry, PlannerOptions(model="m", max_tokens=123))

        decision = await planner.decide(make_state())

        assert isinstance(decision, CallTool)
        assert decision.call.tool_name == "datetime_tool"
        messages = llm.calls[0]
        assert llm.configs[0].max_tokens == 123
        assert "datetime_tool" in messages[-1].content

    @pytest.mark.asyncio
    async def test_decide_uses_registry_display_names(self, registry):
        llm = ScriptedLLMClient(['{"call_tool": {"name": "Clock Reader", "args": {}}}'])
        decision = await Planner(llm, registry).decide(make_state())
        assert decision.call.tool_name == "datetime_tool"

    @pytest.mark.asyncio
    async def test_unparseable_reply_raises(self, registry):
        llm = ScriptedLLMClient(['{"invalid": "format"}'])
        with pytest.raises(DecisionParseError):
            await Planner(llm, registry).decide(make_state())

    @pytest.mark.asyncio
    async def test_empty_reply_raises(self, registry):
        llm = ScriptedLLMClient([""])
        with pytest.raises(DecisionParseError):
            await Planner(llm, registry).decide(make_state())

    @pytest.mark.asyncio
    async def test_truncated_reply_is_still_parsed(self, registry):
        llm = AsyncMock()
        llm.generate = AsyncMock(
            return_value=LLMResponse(content='{"action": "stop", "reason": "ok"}', truncated=True)
        )
        assert await Planner(llm, registry).decide(make_state()) == Stop(reason="ok")

    @pytest.mark.asyncio
    async def test_model_failure_becomes_plan_error(self, registry):
        llm = AsyncMock()
        llm.generate = AsyncMock(side_effect=LLMConnectionError("connection refused"))
        with pytest.raises(PlanError):
            await Planner(llm, registry).decide(make_state())

    @pytest.mark.asyncio
    async def test_cancel_event_abandons_model_call(self, registry):
        async def slow_generate(messages, config):
            await asyncio.sleep(5)
            return LLMResponse(content='{"action": "stop"}')

        llm = AsyncMock()
        llm.generate = slow_generate
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        with pytest.raises(RunCancelledError):
            await Planner(llm, registry).decide(make_state(), cancel_event=cancel)

    def test_prompt_includes_observation_and_memory(self, registry):
        obs = Observation(
            tool_name="datetime_tool",
            summary="Tool 'datetime_tool' executed successfully",
            key_facts={"iso": "2024-01-01T00:00:00"},
            affordances=["use_different_tool"],
        )
        state = make_state(last_observation=obs, working_memory={"user_city": "Paris"}, turn_index=2)

        prompt = Planner(ScriptedLLMClient(["{}"]), registry).build_prompt(state)

        assert "Current Goal: What time is it?" in prompt
        assert "Turn: 2/20" in prompt
        assert "operation (string; required; one of now, today)" in prompt
        assert "Tool 'datetime_tool' executed successfully" in prompt
        assert "2024-01-01T00:00:00" in prompt
        assert "- user_city: Paris" in prompt

    def test_prompt_omits_disabled_tools(self, registry):
        registry.disable("datetime_tool")
        prompt = Planner(ScriptedLLMClient(["{}"]), registry).build_prompt(make_state())
        assert "(none)" in prompt
