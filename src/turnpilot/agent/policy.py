"""
agent/policy.py — Policy Engine

Turns the planner's Decision into an Action that is safe to execute, given
the last Observation and the run's ErrorHandlingPolicy.

Decision table for CallTool when the previous attempt of the same call failed:

    transient (timeout / retryable_server / rate_limited)
        and attempt <= max_retries          → retry, attempt + 1, backoff wait hint
    use_fallbacks and spec.fallback_tool
        and not a validation failure        → call the fallback, attempt 1
    ask_user_when_missing_fields
        and invalid_input with missing keys → AskUserAction
    otherwise                               → StopAction with a failure summary

AskUser, Stop and Replan decisions pass through. The engine keeps no state
between calls: identical inputs always resolve to the identical Action.
"""

from __future__ import annotations

import random
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
from turnpilot.agent.types import AgentState, ErrorHandlingPolicy, Observation
from turnpilot.observability.logger import get_logger
from turnpilot.tools.tool_registry import ToolRegistry
from turnpilot.tools.types import BackoffStrategy, RetryPolicy, ToolCall, ToolErrorCode, ToolResult

log = get_logger(__name__)

# Upper bound for any computed wait hint
MAX_BACKOFF_SECONDS = 60.0


def compute_backoff(
    retry_policy: RetryPolicy,
    attempt: int,
    base_backoff_seconds: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Wait before retry number ``attempt`` (1 = first retry).

    none → 0, linear → base * attempt, exponential → base * 2^(attempt - 1).

    exponential_jitter blends the exponential delay with a decorrelated
    jitter walk (each step drawn from [base, 3 * previous step], capped),
    weighted by jitter_factor: 0 gives plain exponential, 1 the pure walk.
    The walk is replayed from the first retry with ``rng``, so a seeded
    generator yields the same delay every time.
    """
    base = retry_policy.base_backoff_seconds if base_backoff_seconds is None else base_backoff_seconds
    attempt = max(attempt, 1)
    strategy = retry_policy.strategy

    if strategy is BackoffStrategy.NONE or base <= 0:
        return 0.0
    if strategy is BackoffStrategy.LINEAR:
        delay = base * attempt
    else:
        delay = base * (2 ** (attempt - 1))
        jitter = retry_policy.jitter_factor
        if strategy is BackoffStrategy.EXPONENTIAL_JITTER and jitter > 0:
            rng = rng if rng is not None else random.Random(attempt)
            step = base
            for _ in range(attempt):
                step = min(MAX_BACKOFF_SECONDS, rng.uniform(base, step * 3))
            delay += jitter * (step - delay)

    return round(min(max(delay, 0.0), MAX_BACKOFF_SECONDS), 3)


class PolicyEngine:
    """
    Usage:
        engine = PolicyEngine(registry)
        action = engine.resolve(decision, state.last_observation, policy, state)
    """

    def __init__(self, registry: Optional[ToolRegistry] = None) -> None:
        self._registry = registry

    def resolve(
        self,
        decision: Decision,
        last_observation: Optional[Observation],
        policy: ErrorHandlingPolicy,
        state: AgentState,
        now: Optional[float] = None,
    ) -> Action:
        if state.budget_exhausted(now):
            log.warning("policy.budget_exhausted", turn=state.turn_index)
            return StopAction(reason="Budget exhausted")

        if isinstance(decision, CallTool):
            return self._resolve_call(decision.call, last_observation, policy, state)
        if isinstance(decision, AskUser):
            return AskUserAction(question=decision.question, missing_fields=decision.missing_fields)
        if isinstance(decision, Stop):
            return StopAction(reason=decision.reason)
        if isinstance(decision, Replan):
            return ReplanAction(subgoals=decision.subgoals)
        return StopAction(reason=f"Unknown decision type: {type(decision).__name__}")

    # ── CallTool ──────────────────────────────────────────────────────────────

    def _resolve_call(
        self,
        call: ToolCall,
        last_observation: Optional[Observation],
        policy: ErrorHandlingPolicy,
        state: AgentState,
    ) -> Action:
        raw = last_observation.raw if last_observation is not None else None
        if raw is None or raw.ok or not _same_call(call, raw, state):
            return CallToolAction(call=call, retry_attempt=1)

        name = call.tool_name
        code = raw.error_code
        spec = self._registry.get_spec(name) if self._registry else None

        # ── Step 1: Retry transient failures ─────────────────────────────────
        if code.is_transient and raw.attempt <= policy.max_retries:
            next_attempt = raw.attempt + 1
            retry_policy = spec.retry_policy if spec else RetryPolicy.default()
            wait = compute_backoff(
                retry_policy,
                raw.attempt,
                base_backoff_seconds=policy.base_backoff_seconds,
                rng=random.Random(f"{name}:{next_attempt}"),
            )
            if raw.retry_after:
                wait = min(max(wait, raw.retry_after), MAX_BACKOFF_SECONDS)
            log.info(
                "policy.retry",
                tool=name,
                code=code.value,
                attempt=next_attempt,
                max_retries=policy.max_retries,
                wait_seconds=wait,
            )
            return CallToolAction(call=call, retry_attempt=next_attempt, wait_seconds=wait)

        # ── Step 2: Fallback tool ────────────────────────────────────────────
        fallback = spec.fallback_tool if spec else None
        if (
            policy.use_fallbacks
            and fallback
            and fallback != name
            and not code.is_validation_failure
        ):
            log.info("policy.fallback", tool=name, fallback=fallback, code=code.value)
            return CallToolAction(call=ToolCall(tool_name=fallback, args=call.args), retry_attempt=1)

        # ── Step 3: Ask for missing fields ───────────────────────────────────
        if (
            policy.ask_user_when_missing_fields
            and code is ToolErrorCode.INVALID_INPUT
            and raw.missing_fields
        ):
            fields = ", ".join(raw.missing_fields)
            log.info("policy.ask_user", tool=name, missing=raw.missing_fields)
            return AskUserAction(
                question=f"Tool '{name}' needs more information. Please provide: {fields}.",
                missing_fields=list(raw.missing_fields),
            )

        # ── Step 4: Give up ──────────────────────────────────────────────────
        log.warning("policy.stop", tool=name, code=code.value, attempts=raw.attempt)
        return StopAction(reason=_failure_summary(name, raw))


def _same_call(call: ToolCall, raw: ToolResult, state: AgentState) -> bool:
    """The failed result belongs to this call: same tool, and same args when known."""
    if raw.tool_name != call.tool_name:
        return False
    last = state.last_action
    if isinstance(last, CallToolAction) and last.call.tool_name == call.tool_name:
        return last.call.args == call.args
    return True


def _failure_summary(name: str, raw: ToolResult) -> str:
    details = (raw.error_details or "").strip().splitlines()
    detail = f" - {details[0]}" if details else ""
    plural = "attempt" if raw.attempt == 1 else "attempts"
    return f"Tool '{name}' failed after {raw.attempt} {plural}: {raw.error_code.value}{detail}"
