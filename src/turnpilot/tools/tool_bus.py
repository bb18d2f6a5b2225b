"""
tools/tool_bus.py — Tool Bus

The single chokepoint every tool call passes through.

Flow:
  ToolCall → ToolBus.execute()
    → Registry lookup (is the tool registered and enabled?)
    → Input validation (JSON Schema, defaults injected)
    → Executor invocation (timeout raced against run cancellation)
    → Output validation / normalisation (optional bounded repair)
    → ToolResult (ok or classified failure, with attempt + latency)

The bus never retries and never raises for tool failures. Retry decisions
belong to the PolicyEngine, which passes the attempt number back in.
"""

from __future__ import annotations

import asyncio
import json
import time
import traceback
from typing import Any, Optional

from turnpilot.exceptions import RetryableToolError, RunCancelledError, ToolNotFoundError
from turnpilot.observability.logger import get_logger
from turnpilot.tools.executor import (
    ExecutionContext,
    ExecutionOutcome,
    RegistryToolExecutor,
    ToolExecutor,
)
from turnpilot.tools.output_limiter import OutputLimiter, TruncatingOutputLimiter
from turnpilot.tools.tool_registry import ToolRegistry
from turnpilot.tools.types import ToolCall, ToolErrorCode, ToolResult
from turnpilot.tools.validation import try_repair_output, validate_and_normalize

log = get_logger(__name__)

# Default tool execution timeout when a spec declares none
DEFAULT_TIMEOUT_SECONDS = 30.0

# Max size of a plain-text tool result before explicit truncation
MAX_RESULT_CHARS = 8_000


class ToolBus:
    """
    Validates and executes single tool calls against their declared contract.

    Usage:
        bus = ToolBus(registry)
        result = await bus.execute(ToolCall(tool_name="datetime_tool",
                                            args={"operation": "now"}))
    """

    def __init__(
        self,
        registry: ToolRegistry,
        executor: Optional[ToolExecutor] = None,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        repair_output: bool = False,
        working_directory: str = ".",
        environment: Optional[dict[str, str]] = None,
        max_result_chars: int = MAX_RESULT_CHARS,
        output_limiter: Optional[OutputLimiter] = None,
    ):
        """
        Args:
            registry:                Tool catalog with the declared specs.
            executor:                Invokes tool code. Defaults to the registry handlers.
            default_timeout_seconds: Used when a spec has no timeout of its own.
            repair_output:           Attempt bounded field-rename repair on output mismatch.
            working_directory:       Passed to the executor in the ExecutionContext.
            environment:             Passed to the executor in the ExecutionContext.
            max_result_chars:        Plain-text results longer than this are truncated.
            output_limiter:          Does the truncation. Defaults to TruncatingOutputLimiter.
        """
        self.registry = registry
        self.executor = executor if executor is not None else RegistryToolExecutor(registry)
        self.default_timeout_seconds = default_timeout_seconds
        self.repair_output = repair_output
        self.working_directory = working_directory
        self.environment = dict(environment or {})
        self.max_result_chars = max_result_chars
        self.limiter = output_limiter if output_limiter is not None else TruncatingOutputLimiter()

    async def execute(
        self,
        call: ToolCall,
        attempt: int = 1,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ToolResult:
        """
        Run one attempt of a tool call through the full pipeline.

        Returns:
            ToolResult, always. asyncio.CancelledError is the only thing that propagates.
        """
        start = time.monotonic()
        name = call.tool_name

        def elapsed_ms() -> float:
            return round((time.monotonic() - start) * 1000, 2)

        def fail(code: ToolErrorCode, details: str, **extra: Any) -> ToolResult:
            return ToolResult.failure(
                name, code, details, attempt=attempt, latency_ms=elapsed_ms(), **extra
            )

        log.info("tool_bus.execute", tool=name, attempt=attempt)

        # ── Step 1: Registry lookup ───────────────────────────────────────────
        spec = self.registry.get_spec(name)
        if spec is None or not spec.enabled:
            state = "disabled" if spec is not None else "unknown"
            log.warning("tool_bus.not_found", tool=name, state=state)
            return fail(
                ToolErrorCode.NOT_FOUND,
                f"Tool '{name}' is {state}. Available tools: {self.registry.list_names()}",
            )

        # ── Step 2: Input validation ──────────────────────────────────────────
        payload_chars = len(json.dumps(call.args, default=str))
        if payload_chars > spec.max_payload_chars:
            return fail(
                ToolErrorCode.INVALID_INPUT,
                f"Arguments are {payload_chars} chars, limit is {spec.max_payload_chars}",
            )

        report = validate_and_normalize(spec.input_schema, call.args)
        if not report.valid:
            log.info(
                "tool_bus.invalid_input",
                tool=name,
                errors=report.errors,
                missing=report.missing_fields,
            )
            return fail(
                ToolErrorCode.INVALID_INPUT,
                f"Invalid arguments: {report.summary()}",
                missing_fields=report.missing_fields,
            )
        args = report.payload

        # ── Step 3: Invoke under timeout and run cancellation ─────────────────
        timeout = spec.timeout_seconds or self.default_timeout_seconds
        context = ExecutionContext(
            working_directory=self.working_directory,
            environment=dict(self.environment),
            cancel_event=cancel_event,
        )
        try:
            outcome = await self._invoke(name, args, context, timeout)
        except RunCancelledError:
            log.warning("tool_bus.cancelled", tool=name, duration_ms=elapsed_ms())
            return fail(ToolErrorCode.TIMEOUT, f"Tool '{name}' cancelled by run cancellation")
        except asyncio.TimeoutError:
            log.error(
                "tool_bus.timeout",
                tool=name,
                timeout_seconds=timeout,
                duration_ms=elapsed_ms(),
            )
            return fail(ToolErrorCode.TIMEOUT, f"Tool '{name}' timed out after {timeout}s")
        except RetryableToolError as e:
            code = _classify_retryable(e)
            log.warning("tool_bus.retryable", tool=name, code=code.value, error=str(e))
            return fail(code, str(e), retry_after=e.retry_after)
        except ToolNotFoundError as e:
            log.warning("tool_bus.no_handler", tool=name, error=str(e))
            return fail(ToolErrorCode.NOT_FOUND, str(e))
        except Exception as e:
            log.error(
                "tool_bus.tool_bug",
                tool=name,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=elapsed_ms(),
                exc_info=True,
            )
            return fail(
                ToolErrorCode.TOOL_BUG,
                f"{type(e).__name__}: {e}\n{traceback.format_exc()}",
            )

        if not outcome.success:
            message = outcome.error or "Tool reported failure without a message"
            code = outcome.error_code or classify_failure_message(message)
            if code is ToolErrorCode.NONE:
                code = ToolErrorCode.TOOL_BUG
            if code is ToolErrorCode.TOOL_BUG:
                log.error("tool_bus.tool_bug", tool=name, error=message)
            else:
                log.warning("tool_bus.failed", tool=name, code=code.value, error=message)
            return fail(code, message, data=outcome.data)

        # ── Step 4: Output validation / normalisation ─────────────────────────
        out = validate_and_normalize(spec.output_schema, outcome.data)
        if not out.valid and self.repair_output:
            repaired = try_repair_output(spec.output_schema, out)
            if repaired is not None:
                log.warning("tool_bus.output_repaired", tool=name, missing=out.missing_fields)
                out = repaired

        if not out.valid:
            log.warning("tool_bus.output_mismatch", tool=name, errors=out.errors)
            return fail(
                ToolErrorCode.OUTPUT_SCHEMA_MISMATCH,
                f"Output does not match schema: {out.summary()}",
                data=outcome.data,
                missing_fields=out.missing_fields,
            )

        data = out.payload
        if isinstance(data, str):
            data = self.limiter.limit(data, self.max_result_chars)

        latency = elapsed_ms()
        log.info("tool_bus.success", tool=name, attempt=attempt, duration_ms=latency)
        return ToolResult.success(name, data, attempt=attempt, latency_ms=latency)

    async def _invoke(
        self,
        name: str,
        args: dict[str, Any],
        context: ExecutionContext,
        timeout: float,
    ) -> ExecutionOutcome:
        """
        Await the executor, bounded by the timeout and the run cancellation event.

        Raises asyncio.TimeoutError on timeout and RunCancelledError when the
        run is cancelled first. The executor task never outlives this call.
        """
        cancel_event = context.cancel_event
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError("run cancelled before tool invocation")

        task = asyncio.ensure_future(self.executor.execute(name, args, context))
        if cancel_event is None:
            return await asyncio.wait_for(task, timeout=timeout)

        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()

        # Let the cancelled task settle before reporting.
        await asyncio.wait({task})
        if cancel_event.is_set():
            raise RunCancelledError("run cancelled during tool invocation")
        raise asyncio.TimeoutError()


# ─────────────────────────────────────────────────────────────────────────────
# Failure classification
# ─────────────────────────────────────────────────────────────────────────────

_RATE_LIMIT_MARKERS = ("rate limit", "rate-limit", "ratelimit", "too many requests", "429", "throttl")
_TIMEOUT_MARKERS = ("timed out", "timeout")
_RETRYABLE_MARKERS = ("retry", "temporar", "unavailable", "503", "502", "try again")
_UNAUTHORIZED_MARKERS = ("unauthorized", "unauthorised", "401", "invalid api key")
_FORBIDDEN_MARKERS = ("forbidden", "403", "permission denied", "access denied")
_NO_RESULTS_MARKERS = ("no results", "no matches", "nothing found")


def classify_failure_message(message: str) -> ToolErrorCode:
    """Map a failure message reported without an explicit code onto the taxonomy."""
    text = message.lower()
    if any(m in text for m in _RATE_LIMIT_MARKERS):
        return ToolErrorCode.RATE_LIMITED
    if any(m in text for m in _TIMEOUT_MARKERS):
        return ToolErrorCode.TIMEOUT
    if any(m in text for m in _RETRYABLE_MARKERS):
        return ToolErrorCode.RETRYABLE_SERVER
    if any(m in text for m in _UNAUTHORIZED_MARKERS):
        return ToolErrorCode.UNAUTHORIZED
    if any(m in text for m in _FORBIDDEN_MARKERS):
        return ToolErrorCode.FORBIDDEN
    if any(m in text for m in _NO_RESULTS_MARKERS):
        return ToolErrorCode.NO_RESULTS
    return ToolErrorCode.TOOL_BUG


def _classify_retryable(error: RetryableToolError) -> ToolErrorCode:
    text = str(error).lower()
    if error.rate_limited or error.retry_after is not None:
        return ToolErrorCode.RATE_LIMITED
    if any(m in text for m in _RATE_LIMIT_MARKERS):
        return ToolErrorCode.RATE_LIMITED
    return ToolErrorCode.RETRYABLE_SERVER
