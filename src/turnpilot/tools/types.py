"""
tools/types.py — Tool Contract Data Models

Shared types used across the tool registry, tool bus, policy engine and
observation normalizer.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ─────────────────────────────────────────────────────────────────────────────
# Error taxonomy
# ─────────────────────────────────────────────────────────────────────────────


class ToolErrorCode(str, Enum):
    """
    Closed failure taxonomy shared by the ToolBus and the PolicyEngine.
    """
    NONE = "none"
    INVALID_INPUT = "invalid_input"
    TIMEOUT = "timeout"
    RETRYABLE_SERVER = "retryable_server"
    RATE_LIMITED = "rate_limited"
    OUTPUT_SCHEMA_MISMATCH = "output_schema_mismatch"
    NO_RESULTS = "no_results"
    TOOL_BUG = "tool_bug"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"

    @property
    def is_transient(self) -> bool:
        """Failures that are retried with backoff before escalation."""
        return self in _TRANSIENT

    @property
    def is_validation_failure(self) -> bool:
        """Failures that are never retried and never substituted by a fallback."""
        return self in (ToolErrorCode.INVALID_INPUT, ToolErrorCode.NOT_FOUND)


_TRANSIENT = frozenset({
    ToolErrorCode.TIMEOUT,
    ToolErrorCode.RETRYABLE_SERVER,
    ToolErrorCode.RATE_LIMITED,
})


# ─────────────────────────────────────────────────────────────────────────────
# Retry policy
# ─────────────────────────────────────────────────────────────────────────────


class BackoffStrategy(str, Enum):
    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    EXPONENTIAL_JITTER = "exponential_jitter"


class RetryPolicy(BaseModel):
    """Per-tool retry shape. The PolicyEngine turns it into a wait hint."""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    base_backoff_seconds: float = Field(default=1.0, ge=0.0)
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    jitter_factor: float = Field(default=0.1, ge=0.0, le=1.0)

    @classmethod
    def default(cls) -> "RetryPolicy":
        return cls()

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_retries=0, strategy=BackoffStrategy.NONE)


# ─────────────────────────────────────────────────────────────────────────────
# Tool registration metadata
# ─────────────────────────────────────────────────────────────────────────────

# Parameter type synonyms accepted from catalogs → JSON Schema type names.
_JSON_TYPE_SYNONYMS: dict[str, str] = {
    "boolean": "boolean",
    "bool": "boolean",
    "integer": "integer",
    "int": "integer",
    "long": "integer",
    "number": "number",
    "float": "number",
    "double": "number",
    "decimal": "number",
    "string": "string",
    "text": "string",
    "str": "string",
    "array": "array",
    "list": "array",
    "object": "object",
    "dict": "object",
}


def json_type_for(type_name: str) -> str:
    """Map a catalog parameter type to a JSON Schema type (unknown → string)."""
    return _JSON_TYPE_SYNONYMS.get(type_name.strip().lower(), "string")


class ToolParameter(BaseModel):
    """One declared parameter of a tool."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    allowed_values: Optional[list[Any]] = None
    default: Any = None
    item_type: Optional[str] = None     # element type when type is array

    def to_json_schema(self) -> dict[str, Any]:
        prop: dict[str, Any] = {"type": json_type_for(self.type)}
        if self.description:
            prop["description"] = self.description
        if self.allowed_values:
            prop["enum"] = list(self.allowed_values)
        if self.default is not None:
            prop["default"] = self.default
        if prop["type"] == "array" and self.item_type:
            prop["items"] = {"type": json_type_for(self.item_type)}
        return prop


class ToolSpec(BaseModel):
    """
    Full contract for a registered tool.
    Stored in ToolRegistry and used by the planner prompt, the ToolBus
    and the PolicyEngine.
    """
    name: str
    description: str = ""
    parameters: list[ToolParameter] = Field(default_factory=list)
    output_schema: dict[str, Any] = Field(default_factory=dict)   # {} accepts anything
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy.default)
    timeout_seconds: Optional[float] = None     # None → ToolBus default
    fallback_tool: Optional[str] = None
    display_name: Optional[str] = None          # human label models sometimes echo back
    version: str = "1.0"
    enabled: bool = True
    max_payload_chars: int = 512_000

    @field_validator("name")
    @classmethod
    def _non_empty_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("tool name must not be empty")
        return v

    @property
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema derived from the declared parameter list."""
        return {
            "type": "object",
            "properties": {p.name: p.to_json_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    @property
    def required_parameters(self) -> list[str]:
        return [p.name for p in self.parameters if p.required]


# ─────────────────────────────────────────────────────────────────────────────
# Runtime tool call / result types
# ─────────────────────────────────────────────────────────────────────────────


class ToolCall(BaseModel):
    """A requested tool invocation."""
    model_config = ConfigDict(frozen=True)

    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)

    @field_validator("tool_name")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("tool_name must not be empty")
        return v


class ToolResult(BaseModel):
    """Outcome of one ToolBus.execute() attempt. Always returned, never raised."""
    model_config = ConfigDict(frozen=True)

    ok: bool
    data: Any = None
    error_code: ToolErrorCode = ToolErrorCode.NONE
    error_details: Optional[str] = None
    schema_validated: bool = False
    attempt: int = Field(default=1, ge=1)
    latency_ms: float = 0.0
    tool_name: str = ""
    missing_fields: list[str] = Field(default_factory=list)
    retry_after: Optional[float] = None

    @model_validator(mode="after")
    def _ok_implies_no_error(self) -> "ToolResult":
        if self.ok and self.error_code is not ToolErrorCode.NONE:
            raise ValueError("ok=True requires error_code=NONE")
        if not self.ok and self.error_code is ToolErrorCode.NONE:
            raise ValueError("a failed ToolResult needs an error_code")
        return self

    @classmethod
    def success(
        cls,
        tool_name: str,
        data: Any,
        attempt: int = 1,
        latency_ms: float = 0.0,
    ) -> "ToolResult":
        return cls(
            ok=True,
            data=data,
            schema_validated=True,
            attempt=attempt,
            latency_ms=latency_ms,
            tool_name=tool_name,
        )

    @classmethod
    def failure(
        cls,
        tool_name: str,
        error_code: ToolErrorCode,
        error_details: str,
        attempt: int = 1,
        latency_ms: float = 0.0,
        data: Any = None,
        missing_fields: Optional[list[str]] = None,
        retry_after: Optional[float] = None,
    ) -> "ToolResult":
        return cls(
            ok=False,
            data=data,
            error_code=error_code,
            error_details=error_details,
            attempt=attempt,
            latency_ms=latency_ms,
            tool_name=tool_name,
            missing_fields=missing_fields or [],
            retry_after=retry_after,
        )
