"""
tools/__init__.py — turnpilot Tool Contract Layer

Public interface for the tool system.

Usage:
    from turnpilot.tools import ToolBus, ToolRegistry, ToolCall, ToolParameter

    registry = ToolRegistry()

    @registry.register(name="echo", parameters=[ToolParameter(name="text", required=True)])
    async def echo(text: str) -> dict:
        return {"text": text}

    bus = ToolBus(registry)
    result = await bus.execute(ToolCall(tool_name="echo", args={"text": "hi"}))
"""

from __future__ import annotations

from turnpilot.tools.executor import (
    ExecutionContext,
    ExecutionOutcome,
    RegistryToolExecutor,
    ToolExecutor,
)
from turnpilot.tools.output_limiter import OutputLimiter, TruncatingOutputLimiter
from turnpilot.tools.tool_bus import ToolBus, classify_failure_message
from turnpilot.tools.tool_registry import ToolRegistry
from turnpilot.tools.types import (
    BackoffStrategy,
    RetryPolicy,
    ToolCall,
    ToolErrorCode,
    ToolParameter,
    ToolResult,
    ToolSpec,
)

__all__ = [
    "ToolBus",
    "ToolRegistry",
    "classify_failure_message",
    # Executors
    "ToolExecutor",
    "RegistryToolExecutor",
    "ExecutionContext",
    "ExecutionOutcome",
    # Output limiting
    "OutputLimiter",
    "TruncatingOutputLimiter",
    # Types
    "BackoffStrategy",
    "RetryPolicy",
    "ToolCall",
    "ToolErrorCode",
    "ToolParameter",
    "ToolResult",
    "ToolSpec",
]
