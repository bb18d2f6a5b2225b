"""
agent/normalizer.py — Observation Normalizer

Turns a ToolResult into a small Observation the planner can read:
  - summary      one sentence, capped at max_summary_chars
  - key_facts    flattened leaf values, capped in count and per-value length
  - affordances  hints about sensible next moves (pagination, retry, fallback...)

Nothing is cut silently. Long values go through the OutputLimiter, which
appends a truncation marker, and dropped facts are counted in ``facts_omitted``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

from turnpilot.agent.types import Observation
from turnpilot.observability.logger import get_logger
from turnpilot.tools.output_limiter import OutputLimiter, TruncatingOutputLimiter
from turnpilot.tools.tool_registry import ToolRegistry
from turnpilot.tools.types import ToolErrorCode, ToolResult

log = get_logger(__name__)

_PAGINATION_MARKERS = ("next_page", "nextToken", "next_cursor")
_ALWAYS = ("use_different_tool", "ask_user_for_guidance")


@dataclass
class NormalizerOptions:
    max_key_facts: int = 10
    max_depth: int = 2
    max_fact_chars: int = 100
    max_summary_chars: int = 200


class ObservationNormalizer:
    """
    Usage:
        normalizer = ObservationNormalizer(registry=registry)
        obs = normalizer.normalize("search", result.data, result)
    """

    def __init__(
        self,
        options: Optional[NormalizerOptions] = None,
        output_limiter: Optional[OutputLimiter] = None,
        registry: Optional[ToolRegistry] = None,
    ) -> None:
        self.options = options or NormalizerOptions()
        self.limiter = output_limiter if output_limiter is not None else TruncatingOutputLimiter()
        self.registry = registry

    def normalize(self, tool_name: str, raw_output: Any, result: ToolResult) -> Observation:
        summary = self._summary(tool_name, raw_output, result)
        facts = self._key_facts(raw_output, result)
        affordances = self._affordances(tool_name, raw_output, result)
        log.debug(
            "normalizer.observation",
            tool=tool_name,
            ok=result.ok,
            facts=len(facts),
            affordances=len(affordances),
        )
        return Observation(
            tool_name=tool_name,
            summary=summary,
            key_facts=facts,
            affordances=affordances,
            raw=result,
        )

    # ── Summary ───────────────────────────────────────────────────────────────

    def _summary(self, tool_name: str, raw: Any, result: ToolResult) -> str:
        if not result.ok:
            details = (result.error_details or "").strip().splitlines()
            first = details[0] if details else "no details"
            text = f"Tool '{tool_name}' failed: {result.error_code.value} - {first}"
        elif raw is None:
            text = f"Tool '{tool_name}' completed with no data"
        elif isinstance(raw, list):
            text = f"Tool '{tool_name}' returned {len(raw)} items"
        else:
            text = f"Tool '{tool_name}' executed successfully"
        return self.limiter.limit(text, self.options.max_summary_chars)

    # ── Key facts ─────────────────────────────────────────────────────────────

    def _key_facts(self, raw: Any, result: ToolResult) -> dict[str, str]:
        facts: dict[str, str] = {
            "execution_time_ms": f"{result.latency_ms:.2f}",
            "attempt": str(result.attempt),
        }

        if not result.ok:
            facts["error_code"] = result.error_code.value
            if result.error_details:
                facts["error_details"] = self._cap(result.error_details)
            if result.missing_fields:
                facts["missing_fields"] = self._cap(", ".join(result.missing_fields))
            return facts

        found: list[tuple[str, str]] = []
        if isinstance(raw, dict):
            self._flatten(raw, "", 0, found)
        elif isinstance(raw, list):
            found.append(("result_count", str(len(raw))))
            if raw and isinstance(raw[0], dict):
                self._flatten(raw[0], "first_", 1, found)
        elif raw is not None:
            found.append(("result", self._cap(_text(raw))))

        room = self.options.max_key_facts - len(facts)
        if len(found) > room:
            keep = max(room - 1, 0)
            facts.update(found[:keep])
            facts["facts_omitted"] = str(len(found) - keep)
        else:
            facts.update(found)
        return facts

    def _flatten(
        self, obj: dict[str, Any], prefix: str, depth: int, out: list[tuple[str, str]]
    ) -> None:
        if depth >= self.options.max_depth:
            return
        for key, value in obj.items():
            name = f"{prefix}{key}"
            if value is None:
                continue
            if isinstance(value, dict):
                if depth < self.options.max_depth - 1:
                    self._flatten(value, f"{name}.", depth + 1, out)
            elif isinstance(value, list):
                out.append((f"{name}_count", str(len(value))))
            else:
                out.append((name, self._cap(_text(value))))

    def _cap(self, text: str) -> str:
        return self.limiter.limit(text, self.options.max_fact_chars)

    # ── Affordances ───────────────────────────────────────────────────────────

    def _affordances(self, tool_name: str, raw: Any, result: ToolResult) -> list[str]:
        out: list[str] = []
        code = result.error_code

        if not result.ok:
            if code.is_transient:
                out.append("retry_with_backoff")
            elif code is ToolErrorCode.INVALID_INPUT:
                if result.missing_fields:
                    out.extend(f"retry_with_param_{f}" for f in result.missing_fields)
                else:
                    out.append("fix_parameters")
                out.append("ask_user_for_clarification")
            elif code in (ToolErrorCode.UNAUTHORIZED, ToolErrorCode.FORBIDDEN):
                out.append("check_permissions")
            elif code is ToolErrorCode.OUTPUT_SCHEMA_MISMATCH:
                out.append("repair_output")

            fallback = self._fallback_for(tool_name)
            if fallback and not code.is_validation_failure:
                out.append(f"fallback_tool_{fallback}")

        elif isinstance(raw, dict):
            if any(raw.get(m) for m in _PAGINATION_MARKERS):
                out.append("next_page")
            if raw.get("has_more") is True:
                out.append("fetch_more_results")
            results = raw.get("results")
            if isinstance(results, list) and results:
                out.append("process_results")

        out.extend(_ALWAYS)
        return out

    def _fallback_for(self, tool_name: str) -> Optional[str]:
        if self.registry is None:
            return None
        spec = self.registry.get_spec(tool_name)
        return spec.fallback_tool if spec else None


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return json.dumps(value, default=str)
