"""
brain/__init__.py — turnpilot model collaborator boundary
"""

from turnpilot.brain.llm_client import BaseLLMClient, ScriptedLLMClient
from turnpilot.brain.types import LLMConfig, LLMResponse, Message, Role

__all__ = [
    "BaseLLMClient",
    "ScriptedLLMClient",
    "LLMConfig",
    "LLMResponse",
    "Message",
    "Role",
]
