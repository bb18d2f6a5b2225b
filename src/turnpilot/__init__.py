"""
turnpilot: turn-based orchestration runtime for tool-using LLM agents.

    from turnpilot import Agent, Goal, ToolRegistry, load_settings

    settings = load_settings()
    agent = Agent.from_settings(settings, llm_client, registry)
    result = await agent.run(Goal(text="..."), settings.budget(),
                             settings.error_handling_policy())
"""

ENGINE_NAME = "turnpilot"
__version__ = "0.3.0"

from turnpilot.agent.orchestrator import Agent  # noqa: E402
from turnpilot.agent.types import (  # noqa: E402
    AgentResult,
    AgentState,
    Budget,
    Critique,
    ErrorHandlingPolicy,
    Goal,
    Observation,
)
from turnpilot.config.settings import Settings, load_settings  # noqa: E402
from turnpilot.tools import ToolBus, ToolCall, ToolParameter, ToolRegistry, ToolResult, ToolSpec  # noqa: E402

__all__ = [
    "ENGINE_NAME",
    "__version__",
    "Agent",
    "AgentResult",
    "AgentState",
    "Budget",
    "Critique",
    "ErrorHandlingPolicy",
    "Goal",
    "Observation",
    "Settings",
    "load_settings",
    "ToolBus",
    "ToolCall",
    "ToolParameter",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
]
