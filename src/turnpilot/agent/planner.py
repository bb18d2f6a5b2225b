"""
agent/planner.py — Decision Parser (Planner)

Asks the model collaborator for exactly one next move and turns its text
reply into a typed Decision.

Parsing is two-tiered:
  1. Primary    {"action": "call_tool" | "ask_user" | "replan" | "stop", ...}
  2. Fallbacks  shapes models emit instead, tried in order:
                {"call_tool": {"name", "args"}}   tool name normalised, default args injected
                {"stop": {"reason"}}
                {"ask_user": {"question", "missing_fields"}}
                    an empty missing_fields list means the model already answered,
                    so it becomes Stop(question)

Anything else raises DecisionParseError. There is no default decision and
no retry here; retries happen at the action level in the PolicyEngine.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from turnpilot.agent.decisions import AskUser, CallTool, Decision, Replan, Stop
from turnpilot.agent.types import AgentState
from turnpilot.agent.utils import await_cancellable
from turnpilot.brain.llm_client import BaseLLMClient
from turnpilot.brain.types import LLMConfig, Message
from turnpilot.exceptions import DecisionParseError, LLMError, PlanError
from turnpilot.observability.logger import get_logger
from turnpilot.tools.tool_registry import ToolRegistry
from turnpilot.tools.types import ToolCall, ToolSpec

log = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a planning agent that decides the next action to take.\n"
    "Always respond with valid JSON in the specified format.\n"
    "Be deterministic and focused on achieving the goal efficiently."
)

# Human-readable labels models echo back instead of tool ids.
KNOWN_TOOL_ALIASES: dict[str, str] = {
    "date time tool": "datetime_tool",
    "datetime tool": "datetime_tool",
    "date_time_tool": "datetime_tool",
    "encoding tool": "encoding_tool",
}

# Arguments injected when a fallback-shaped call arrives with empty args.
DEFAULT_TOOL_ARGS: dict[str, dict[str, Any]] = {
    "datetime_tool": {"operation": "now"},
}


# ─────────────────────────────────────────────────────────────────────────────
# Lookup helpers
# ─────────────────────────────────────────────────────────────────────────────


def normalize_tool_name(name: str, aliases: Optional[dict[str, str]] = None) -> str:
    """Map a model-supplied tool name to a canonical id."""
    key = name.strip().lower()
    if aliases and key in aliases:
        return aliases[key]
    if key in KNOWN_TOOL_ALIASES:
        return KNOWN_TOOL_ALIASES[key]
    return re.sub(r"\s+", "_", key)


def inject_default_args(
    tool_name: str,
    args: Optional[dict[str, Any]],
    defaults: Optional[dict[str, dict[str, Any]]] = None,
) -> dict[str, Any]:
    """Return args unchanged when non-empty, else the known defaults for the tool."""
    if args:
        return dict(args)
    table = DEFAULT_TOOL_ARGS if defaults is None else defaults
    return dict(table.get(tool_name, {}))


_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence, if present."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    return match.group(1).strip() if match else stripped


# ─────────────────────────────────────────────────────────────────────────────
# Shape matchers
# ─────────────────────────────────────────────────────────────────────────────


def _string_list(value: Any, field: str, payload: dict) -> list[str]:
    if not isinstance(value, list):
        raise DecisionParseError(f"'{field}' must be a list", payload=payload)
    return ["" if v is None else str(v) for v in value]


def _match_action(payload: dict, aliases, defaults) -> Optional[Decision]:
    if "action" not in payload:
        return None
    action = payload["action"]

    if action == "call_tool":
        name = payload.get("name")
        args = payload.get("args")
        if not isinstance(name, str) or not name.strip():
            raise DecisionParseError("Missing tool name", payload=payload)
        if not isinstance(args, dict):
            raise DecisionParseError("Missing tool args", payload=payload)
        return CallTool(call=ToolCall(tool_name=name, args=args))

    if action == "ask_user":
        question = payload.get("question")
        if not isinstance(question, str):
            raise DecisionParseError("Missing question", payload=payload)
        fields = payload.get("missing_fields")
        missing = [] if fields is None else _string_list(fields, "missing_fields", payload)
        return AskUser(question=question, missing_fields=missing)

    if action == "replan":
        if "subgoals" not in payload:
            raise DecisionParseError("Missing subgoals", payload=payload)
        return Replan(subgoals=_string_list(payload["subgoals"], "subgoals", payload))

    if action == "stop":
        reason = payload.get("reason")
        return Stop(reason=reason if isinstance(reason, str) else "Task completed")

    raise DecisionParseError(f"Unknown action type: {action}", payload=payload)


def _match_call_tool_object(payload: dict, aliases, defaults) -> Optional[Decision]:
    body = payload.get("call_tool")
    if not isinstance(body, dict) or not isinstance(body.get("name"), str):
        return None
    name = normalize_tool_name(body["name"], aliases)
    if not name:
        return None
    raw_args = body.get("args")
    args = inject_default_args(name, raw_args if isinstance(raw_args, dict) else {}, defaults)
    log.debug("planner.fallback_shape", shape="call_tool", raw_name=body["name"], tool=name)
    return CallTool(call=ToolCall(tool_name=name, args=args))


def _match_stop_object(payload: dict, aliases, defaults) -> Optional[Decision]:
    body = payload.get("stop")
    if isinstance(body, dict):
        reason = body.get("reason")
        return Stop(reason=reason if isinstance(reason, str) else "Task completed")
    if isinstance(body, str) and body:
        return Stop(reason=body)
    return None


def _match_ask_user_object(payload: dict, aliases, defaults) -> Optional[Decision]:
    body = payload.get("ask_user")
    if not isinstance(body, dict) or not isinstance(body.get("question"), str):
        return None
    fields = body.get("missing_fields") or []
    missing = _string_list(fields, "missing_fields", payload)
    if not missing:
        log.debug("planner.fallback_shape", shape="ask_user_as_completion")
        return Stop(reason=body["question"])
    return AskUser(question=body["question"], missing_fields=missing)


_MATCHERS: list[Callable[..., Optional[Decision]]] = [
    _match_action,
    _match_call_tool_object,
    _match_stop_object,
    _match_ask_user_object,
]


def parse_decision(
    payload: Any,
    aliases: Optional[dict[str, str]] = None,
    defaults: Optional[dict[str, dict[str, Any]]] = None,
) -> Decision:
    """Run the ordered shape matchers over a parsed JSON payload."""
    if not isinstance(payload, dict):
        raise DecisionParseError("Planner response must be a JSON object", payload=payload)
    for matcher in _MATCHERS:
        decision = matcher(payload, aliases, defaults)
        if decision is not None:
            return decision
    raise DecisionParseError(
        "Missing 'action' field and no recognised alternate shape", payload=payload
    )


def parse_response(
    text: str,
    aliases: Optional[dict[str, str]] = None,
    defaults: Optional[dict[str, dict[str, Any]]] = None,
) -> Decision:
    """Strip a code fence, parse strict JSON, then parse_decision()."""
    body = strip_code_fence(text or "")
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise DecisionParseError(f"Planner response is not valid JSON: {e}", payload=text) from e
    return parse_decision(payload, aliases, defaults)


# ─────────────────────────────────────────────────────────────────────────────
# Planner
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class PlannerOptions:
    model: str = ""
    max_tokens: int = 500
    temperature: float = 0.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class Planner:
    """
    Usage:
        planner = Planner(llm_client, registry)
        decision = await planner.decide(state)
    """

    def __init__(
        self,
        llm_client: BaseLLMClient,
        registry: ToolRegistry,
        options: Optional[PlannerOptions] = None,
    ) -> None:
        self._llm = llm_client
        self._registry = registry
        self.options = options or PlannerOptions()

    async def decide(
        self,
        state: AgentState,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Decision:
        """One model call, one Decision. Raises DecisionParseError on unusable replies."""
        prompt = self.build_prompt(state)
        messages = [Message.system(self.options.system_prompt), Message.user(prompt)]
        config = LLMConfig(
            model=self.options.model,
            max_tokens=self.options.max_tokens,
            temperature=self.options.temperature,
        )
        log.debug("planner.decide", turn=state.turn_index, prompt_chars=len(prompt))

        try:
            response = await await_cancellable(
                self._llm.generate(messages, config), cancel_event, label="planner"
            )
        except LLMError as e:
            raise PlanError(f"Planner model call failed: {e}") from e
        if not response.content:
            raise DecisionParseError("Model returned empty content", payload=response.content)
        if response.truncated:
            log.warning("planner.reply_truncated", max_tokens=config.max_tokens)

        try:
            decision = parse_response(response.content, aliases=self._registry.aliases())
        except DecisionParseError as e:
            log.warning("planner.parse_failed", error=str(e), content=response.content[:500])
            raise

        log.info("planner.decision", turn=state.turn_index, kind=decision.kind)
        return decision

    def build_prompt(self, state: AgentState) -> str:
        goal = state.goal
        lines = [
            "You are the Planner. Choose exactly one next action and reply with a JSON object:",
            '- {"action": "call_tool", "name": <tool_name>, "args": {...}}',
            '- {"action": "ask_user", "question": "...", "missing_fields": ["..."]}',
            '- {"action": "replan", "subgoals": ["..."]}',
            '- {"action": "stop", "reason": "..."}',
            "",
            f"Current Goal: {goal.text}",
            f"Constraints: {', '.join(goal.constraints) or 'none'}",
            f"Subgoals: {', '.join(state.subgoals) or 'none'}",
            f"Turn: {state.turn_index}/{state.budget.max_turns}",
            "",
            "Available Tools:",
            self._tool_catalog() or "(none)",
        ]

        obs = state.last_observation
        if obs is not None:
            lines += [
                "",
                "Last Observation:",
                obs.summary,
                f"Facts: {json.dumps(obs.key_facts, ensure_ascii=False)}",
                f"Next Actions: {', '.join(obs.affordances)}",
            ]

        if state.working_memory:
            lines += ["", "Working Memory:"]
            lines += [f"- {k}: {v}" for k, v in state.working_memory.items()]

        lines += [
            "",
            "If a tool fails:",
            "- Retry retryable failures with backoff",
            "- Else attempt a fallback tool",
            "- Else ask_user for missing information",
            "- Else stop with a short summary",
            "When the goal is met, stop with a reason containing 'Goal achieved'.",
        ]
        return "\n".join(lines)

    def _tool_catalog(self) -> str:
        return "\n".join(_describe_tool(s) for s in self._registry.list_specs(enabled_only=True))


def _describe_tool(spec: ToolSpec) -> str:
    head = f"- {spec.name}: {spec.description}" if spec.description else f"- {spec.name}"
    params = []
    for p in spec.parameters:
        parts = [p.type]
        if p.item_type:
            parts[0] = f"{p.type}<{p.item_type}>"
        parts.append("required" if p.required else "optional")
        if p.allowed_values:
            parts.append("one of " + ", ".join(str(v) for v in p.allowed_values))
        if p.default is not None:
            parts.append(f"default={p.default}")
        desc = f" {p.description}" if p.description else ""
        params.append(f"    {p.name} ({'; '.join(parts)}){desc}")
    return "\n".join([head, *params])
