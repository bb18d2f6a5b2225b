"""
agent/critic.py — Critic

Judges whether an Observation satisfies the goal and recommends the next
move. The recommendation is advisory; goal_satisfied=True is treated by the
turn loop as authoritative.

LlmCritic asks the model collaborator for a JSON verdict:
    {"goal_satisfied": bool, "assessment": str,
     "known_gaps": [str], "recommendation": "continue|replan|clarify|stop"}

A reply that cannot be parsed becomes a CONTINUE critique, so a flaky model
never ends a run on its own.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from turnpilot.agent.planner import strip_code_fence
from turnpilot.agent.types import Critique, CritiqueRecommendation, Goal, Observation
from turnpilot.agent.utils import await_cancellable
from turnpilot.brain.llm_client import BaseLLMClient
from turnpilot.brain.types import LLMConfig, Message
from turnpilot.exceptions import CriticError, LLMError
from turnpilot.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_CRITIC_PROMPT = (
    "You are a critic that evaluates whether observations satisfy goals.\n"
    "Be objective and thorough in your assessment.\n"
    "Always respond with valid JSON in the specified format."
)


class Critic(ABC):
    @abstractmethod
    async def assess(
        self,
        goal: Goal,
        observation: Observation,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Critique:
        ...


@dataclass
class CriticOptions:
    model: str = ""
    max_tokens: int = 300
    temperature: float = 0.0
    system_prompt: str = DEFAULT_CRITIC_PROMPT


class LlmCritic(Critic):
    def __init__(self, llm_client: BaseLLMClient, options: Optional[CriticOptions] = None) -> None:
        self._llm = llm_client
        self.options = options or CriticOptions()

    async def assess(
        self,
        goal: Goal,
        observation: Observation,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Critique:
        messages = [
            Message.system(self.options.system_prompt),
            Message.user(build_critic_prompt(goal, observation)),
        ]
        config = LLMConfig(
            model=self.options.model,
            max_tokens=self.options.max_tokens,
            temperature=self.options.temperature,
        )
        try:
            response = await await_cancellable(
                self._llm.generate(messages, config), cancel_event, label="critic"
            )
        except LLMError as e:
            raise CriticError(f"Critic model call failed: {e}") from e

        critique = parse_critique(response.content or "")
        log.info(
            "critic.assessment",
            tool=observation.tool_name,
            goal_satisfied=critique.goal_satisfied,
            recommendation=critique.recommendation.value,
        )
        return critique


def build_critic_prompt(goal: Goal, observation: Observation) -> str:
    return "\n".join([
        "You are the Critic. Assess whether the observation satisfies the goal.",
        "",
        f"Goal: {goal.text}",
        f"Constraints: {', '.join(goal.constraints) or 'none'}",
        "",
        f"Observation Summary: {observation.summary}",
        f"Key Facts: {json.dumps(observation.key_facts, ensure_ascii=False)}",
        f"Available Actions: {', '.join(observation.affordances)}",
        "",
        "Analyze:",
        "1. Does this observation indicate progress toward the goal?",
        "2. Is the goal satisfied?",
        "3. What gaps remain?",
        "4. What should be the next action?",
        "",
        "Respond with a JSON object:",
        '{"goal_satisfied": boolean, "assessment": "brief assessment", '
        '"known_gaps": ["gap1"], "recommendation": "continue|replan|clarify|stop"}',
    ])


_RECOMMENDATIONS = {r.value: r for r in CritiqueRecommendation}


def parse_critique(text: str) -> Critique:
    """Parse a critic reply. Unusable replies become a CONTINUE critique."""
    try:
        payload: Any = json.loads(strip_code_fence(text))
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, dict):
        log.warning("critic.unparseable", content=text[:300])
        return Critique(
            goal_satisfied=False,
            assessment="Critic response could not be parsed",
            recommendation=CritiqueRecommendation.CONTINUE,
        )

    satisfied = payload.get("goal_satisfied")
    if isinstance(satisfied, str):
        satisfied = satisfied.strip().lower() == "true"

    gaps = payload.get("known_gaps")
    known_gaps = [str(g) for g in gaps if g] if isinstance(gaps, list) else []

    rec = str(payload.get("recommendation") or "continue").strip().lower()
    assessment = payload.get("assessment")

    return Critique(
        goal_satisfied=satisfied is True,
        assessment=assessment if isinstance(assessment, str) else "No assessment provided",
        known_gaps=known_gaps,
        recommendation=_RECOMMENDATIONS.get(rec, CritiqueRecommendation.CONTINUE),
    )
