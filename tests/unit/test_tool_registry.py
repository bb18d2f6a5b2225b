"""
tests/unit/test_tool_registry.py — Tool Registry and Tool Types Tests

Run with:
    pytest tests/unit/test_tool_registry.py -v
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from turnpilot.exceptions import ToolRegistrationError
from turnpilot.tools.output_limiter import OutputLimiter, TruncatingOutputLimiter
from turnpilot.tools.tool_registry import ToolRegistry
from turnpilot.tools.types import (
    RetryPolicy,
    ToolCall,
    ToolErrorCode,
    ToolParameter,
    ToolResult,
    ToolSpec,
    json_type_for,
)


@pytest.fixture
def registry():
    return ToolRegistry()


class TestRegistration:
    def test_decorator_registers_and_returns_handler(self, registry):
        @registry.register(
            name="echo",
            description="Echo text back",
            parameters=[ToolParameter(name="text", required=True)],
            display_name="Echo Tool",
            fallback_tool="echo_backup",
        )
        async def echo(text: str) -> dict:
            return {"text": text}

        spec = registry.get_spec("echo")
        assert spec.description == "Echo text back"
        assert spec.fallback_tool == "echo_backup"
        assert registry.get_handler("echo") is echo
        assert registry.is_registered("echo")
        assert len(registry) == 1

    def test_spec_without_handler(self, registry):
        registry.register_tool(ToolSpec(name="remote"))
        assert registry.is_registered("remote")
        assert registry.get_handler("remote") is None

    def test_duplicate_rejected(self, registry):
        registry.register_tool(ToolSpec(name="echo"))
        with pytest.raises(ToolRegistrationError):
            registry.register_tool(ToolSpec(name="echo"))

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            ToolSpec(name="  ")

    def test_unknown_lookups_return_none(self, registry):
        assert registry.get_spec("ghost") is None
        assert registry.get_handler("ghost") is None
        assert not registry.is_registered("ghost")


class TestCatalog:
    def test_list_specs_in_registration_order(self, registry):
        for name in ("b_tool", "a_tool", "c_tool"):
            registry.register_tool(ToolSpec(name=name))
        assert registry.list_names() == ["b_tool", "a_tool", "c_tool"]

    def test_disable_and_enable(self, registry):
        registry.register_tool(ToolSpec(name="one"))
        registry.register_tool(ToolSpec(name="two"))

        registry.disable("one")
        assert registry.list_names() == ["two"]
        assert registry.list_names(enabled_only=False) == ["one", "two"]
        assert registry.get_spec("one").enabled is False

        registry.enable("one")
        assert registry.list_names() == ["one", "two"]

    def test_aliases(self, registry):
        registry.register_tool(ToolSpec(name="datetime_tool", display_name="Date Time Tool"))
        registry.register_tool(ToolSpec(name="plain"))
        assert registry.aliases() == {"date time tool": "datetime_tool"}


class TestToolTypes:
    def test_input_schema(self):
        spec = ToolSpec(
            name="search",
            parameters=[
                ToolParameter(name="query", type="str", required=True, description="Search text"),
                ToolParameter(name="limit", type="int", default=10),
                ToolParameter(name="tags", type="list", item_type="string"),
                ToolParameter(name="mode", allowed_values=["fast", "deep"]),
            ],
        )
        schema = spec.input_schema
        assert schema["required"] == ["query"]
        assert schema["properties"]["query"] == {"type": "string", "description": "Search text"}
        assert schema["properties"]["limit"] == {"type": "integer", "default": 10}
        assert schema["properties"]["tags"] == {"type": "array", "items": {"type": "string"}}
        assert schema["properties"]["mode"]["enum"] == ["fast", "deep"]
        assert spec.required_parameters == ["query"]

    @pytest.mark.parametrize(
        "name, expected",
        [("bool", "boolean"), ("Float", "number"), ("dict", "object"), ("widget", "string")],
    )
    def test_json_type_for(self, name, expected):
        assert json_type_for(name) == expected

    def test_error_code_classes(self):
        assert ToolErrorCode.TIMEOUT.is_transient
        assert ToolErrorCode.RATE_LIMITED.is_transient
        assert not ToolErrorCode.TOOL_BUG.is_transient
        assert ToolErrorCode.INVALID_INPUT.is_validation_failure
        assert ToolErrorCode.NOT_FOUND.is_validation_failure
        assert not ToolErrorCode.TIMEOUT.is_validation_failure

    def test_result_ok_requires_no_error(self):
        with pytest.raises(ValidationError):
            ToolResult(ok=True, error_code=ToolErrorCode.TIMEOUT)
        with pytest.raises(ValidationError):
            ToolResult(ok=False)

    def test_result_constructors(self):
        ok = ToolResult.success("t", {"a": 1}, attempt=2, latency_ms=3.5)
        assert ok.ok and ok.schema_validated and ok.attempt == 2
        bad = ToolResult.failure("t", ToolErrorCode.INVALID_INPUT, "nope", missing_fields=["a"])
        assert not bad.ok and not bad.schema_validated
        assert bad.missing_fields == ["a"]

    def test_call_requires_name(self):
        with pytest.raises(ValidationError):
            ToolCall(tool_name="")

    def test_call_is_frozen(self):
        call = ToolCall(tool_name="t")
        with pytest.raises(ValidationError):
            call.tool_name = "other"

    def test_retry_policy_presets(self):
        assert RetryPolicy.default().max_retries == 3
        assert RetryPolicy.no_retry().max_retries == 0


class TestOutputLimiter:
    def test_short_text_untouched(self):
        assert TruncatingOutputLimiter().limit("abc", 10) == "abc"

    def test_long_text_marked(self):
        out = TruncatingOutputLimiter().limit("abcdefghij", 4)
        assert out == "abcd [truncated: 6 of 10 chars omitted]"

    def test_protocol(self):
        assert isinstance(TruncatingOutputLimiter(), OutputLimiter)
