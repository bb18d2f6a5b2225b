"""
brain/llm_client.py — Abstract LLM Client

The engine never talks to a model provider directly. The planner and the
critic call BaseLLMClient.generate() with a system + user message pair and a
sampling config, and parse the returned text themselves.

Provider transports live outside this package; they subclass BaseLLMClient
and raise the LLMError subclasses from turnpilot.exceptions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from turnpilot.brain.types import LLMConfig, LLMResponse, Message


class BaseLLMClient(ABC):
    """
    Abstract base for model collaborators.

    Subclasses must implement generate(). health_check() defaults to True
    for in-process or scripted clients.
    """

    @abstractmethod
    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        """Call the model and return a normalised response."""
        ...

    async def health_check(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class ScriptedLLMClient(BaseLLMClient):
    """
    Replays a fixed list of completions, one per generate() call.

    Used for deterministic runs and tests. Once the script is exhausted the
    last completion is repeated.
    """

    def __init__(self, replies: list[str]) -> None:
        if not replies:
            raise ValueError("ScriptedLLMClient needs at least one reply")
        self._replies = list(replies)
        self._index = 0
        self.calls: list[list[Message]] = []
        self.configs: list[LLMConfig] = []

    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        self.calls.append(list(messages))
        self.configs.append(config)
        reply = self._replies[min(self._index, len(self._replies) - 1)]
        self._index += 1
        return LLMResponse(content=reply, model=config.model or "scripted")
