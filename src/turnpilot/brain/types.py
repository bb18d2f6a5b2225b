"""
brain/types.py — Model Collaborator Data Models

The planner and the critic each send one system + user message pair with
their own sampling config and read back plain text. Provider adapters map
their native request and response shapes onto these three models.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)


class LLMConfig(BaseModel):
    """Sampling settings for one request. Deterministic (temperature 0) by default."""
    model: str = ""
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    max_tokens: int = Field(default=500, ge=1)


class LLMResponse(BaseModel):
    content: Optional[str] = None
    model: str = ""
    truncated: bool = False     # provider stopped at max_tokens
