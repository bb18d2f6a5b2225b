"""
exceptions.py — turnpilot Unified Error Hierarchy

All turnpilot-specific exceptions live here, and every layer of the
engine raises a subclass of TurnPilotError rather than bare Exception.

Import from here, not from individual modules:
    from turnpilot.exceptions import DecisionParseError, RetryableToolError

Hierarchy:
    TurnPilotError
    ├── AgentError
    │   ├── PlanError
    │   │   └── DecisionParseError
    │   ├── CriticError
    │   └── RunCancelledError
    ├── ToolError
    │   ├── ToolNotFoundError
    │   ├── RetryableToolError
    │   └── ToolRegistrationError
    ├── StateError
    │   └── StateStoreError
    ├── LLMError
    │   ├── LLMConnectionError
    │   ├── LLMRateLimitError
    │   └── LLMInvalidRequestError
    └── ConfigError

Tool failures are NOT raised to the agent loop: the ToolBus converts them
into a ToolResult carrying a ToolErrorCode. The exceptions in the ToolError
branch are what tool handlers and executors raise *into* the bus.
"""

from __future__ import annotations

from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class TurnPilotError(Exception):
    """Base class for all turnpilot exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Agent layer
# ─────────────────────────────────────────────────────────────────────────────

class AgentError(TurnPilotError):
    """Base for agent orchestration errors."""


class PlanError(AgentError):
    """The planner could not produce a decision for the current state."""


class DecisionParseError(PlanError):
    """The model response matched none of the known decision shapes."""

    def __init__(self, message: str, payload: Any = None) -> None:
        self.payload = payload
        super().__init__(message)


class CriticError(AgentError):
    """The critic collaborator returned nothing that could be assessed."""


class RunCancelledError(AgentError):
    """The run-level cancellation event was set while awaiting a collaborator."""


# ─────────────────────────────────────────────────────────────────────────────
# Tool layer
# ─────────────────────────────────────────────────────────────────────────────

class ToolError(TurnPilotError):
    """Base for tool-related errors."""


class ToolNotFoundError(ToolError):
    """Requested tool id is not registered, or has no handler."""


class RetryableToolError(ToolError):
    """
    Raised by a tool (or executor) for transient failures worth retrying.

    The ToolBus maps this to RETRYABLE_SERVER, or RATE_LIMITED when the
    failure is flagged as a rate limit / carries a retry-after hint.
    """

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        rate_limited: bool = False,
    ) -> None:
        self.retry_after = retry_after
        self.rate_limited = rate_limited
        super().__init__(message)


class ToolRegistrationError(ToolError):
    """A tool spec could not be registered (duplicate id, empty name)."""


# ─────────────────────────────────────────────────────────────────────────────
# State layer
# ─────────────────────────────────────────────────────────────────────────────

class StateError(TurnPilotError):
    """Base for agent state errors."""


class StateStoreError(StateError):
    """A state store operation (load, save or clear) failed."""


# ─────────────────────────────────────────────────────────────────────────────
# LLM layer
# ─────────────────────────────────────────────────────────────────────────────

class LLMError(TurnPilotError):
    """Model provider error."""


class LLMConnectionError(LLMError):
    """Network / connection failure to the model provider."""


class LLMRateLimitError(LLMError):
    """Model provider rate limit hit."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class LLMInvalidRequestError(LLMError):
    """Malformed request rejected by the model provider."""


# ─────────────────────────────────────────────────────────────────────────────
# Config layer
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(TurnPilotError):
    """Raised by Settings.validate_all() when one or more config problems are found."""


__all__ = [
    "TurnPilotError",
    # Agent
    "AgentError",
    "PlanError",
    "DecisionParseError",
    "CriticError",
    "RunCancelledError",
    # Tool
    "ToolError",
    "ToolNotFoundError",
    "RetryableToolError",
    "ToolRegistrationError",
    # State
    "StateError",
    "StateStoreError",
    # LLM
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMInvalidRequestError",
    # Config
    "ConfigError",
]
