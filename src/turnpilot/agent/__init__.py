"""
agent/__init__.py — turnpilot agent package

Only the leaf value types are re-exported here; the planner, policy engine,
critic and turn loop are imported from their modules (or from ``turnpilot``).
"""

from turnpilot.agent.decisions import (
    Action,
    ActionType,
    AskUser,
    AskUserAction,
    CallTool,
    CallToolAction,
    Decision,
    DecisionKind,
    Replan,
    ReplanAction,
    Stop,
    StopAction,
)
from turnpilot.agent.types import (
    AgentResult,
    AgentState,
    Budget,
    Critique,
    CritiqueRecommendation,
    ErrorHandlingPolicy,
    Goal,
    Observation,
)

__all__ = [
    # Decisions
    "Decision", "DecisionKind", "CallTool", "AskUser", "Stop", "Replan",
    # Actions
    "Action", "ActionType", "CallToolAction", "AskUserAction", "StopAction", "ReplanAction",
    # Run data
    "AgentResult", "AgentState", "Budget", "Critique", "CritiqueRecommendation",
    "ErrorHandlingPolicy", "Goal", "Observation",
]
