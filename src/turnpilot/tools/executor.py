"""
tools/executor.py — Tool Execution Boundary

The ToolBus never calls tool code directly. It goes through a ToolExecutor,
which receives the tool id, the validated arguments and an ExecutionContext
(working directory, environment, run cancellation event).

RegistryToolExecutor is the default: it calls the handler registered in the
ToolRegistry, sync or async, with the arguments as keyword arguments.
Hosts that run tools elsewhere (subprocess, remote worker, MCP server)
implement ToolExecutor themselves.
"""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from turnpilot.exceptions import ToolNotFoundError
from turnpilot.observability.logger import get_logger
from turnpilot.tools.tool_registry import ToolRegistry
from turnpilot.tools.types import ToolErrorCode

log = get_logger(__name__)


@dataclass
class ExecutionContext:
    """Per-call context handed to the executor."""
    working_directory: str = "."
    environment: dict[str, str] = field(default_factory=dict)
    cancel_event: Optional[asyncio.Event] = None


@dataclass
class ExecutionOutcome:
    """
    What an executor reports back for one invocation.

    A failed outcome may carry an explicit error_code; without one the
    ToolBus classifies the error message.
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[ToolErrorCode] = None

    @classmethod
    def ok(cls, data: Any) -> "ExecutionOutcome":
        return cls(success=True, data=data)

    @classmethod
    def failed(
        cls, error: str, error_code: Optional[ToolErrorCode] = None
    ) -> "ExecutionOutcome":
        return cls(success=False, error=error, error_code=error_code)


class ToolExecutor(ABC):
    """Runs one tool invocation. May raise; the ToolBus maps exceptions to error codes."""

    @abstractmethod
    async def execute(
        self,
        tool_id: str,
        args: dict[str, Any],
        context: ExecutionContext,
    ) -> ExecutionOutcome:
        ...


class RegistryToolExecutor(ToolExecutor):
    """
    Calls handlers stored in a ToolRegistry.

    Async handlers are awaited. Sync handlers run in the default thread pool
    so a slow one cannot stall the event loop past the ToolBus timeout.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    async def execute(
        self,
        tool_id: str,
        args: dict[str, Any],
        context: ExecutionContext,
    ) -> ExecutionOutcome:
        handler = self._registry.get_handler(tool_id)
        if handler is None:
            raise ToolNotFoundError(f"Tool '{tool_id}' has no handler registered")

        if inspect.iscoroutinefunction(handler):
            data = await handler(**args)
        else:
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, lambda: handler(**args))
            if inspect.isawaitable(data):
                data = await data

        if isinstance(data, ExecutionOutcome):
            return data
        return ExecutionOutcome.ok(data)
