"""
memory/state_store.py — Keyed State Store

Persistence contract for AgentState snapshots, keyed by run id.
State is kept for crash recovery within a run, not as permanent history:
the turn loop clears it when the run ends.

InMemoryStateStore keeps JSON snapshots in a dict. Distinct run ids never
share an entry, so concurrent runs need no coordination.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import ValidationError

from turnpilot.agent.types import AgentState
from turnpilot.exceptions import StateStoreError


class StateStore(ABC):
    @abstractmethod
    async def load(self, run_id: str) -> Optional[AgentState]:
        """Return the saved state for run_id, or None."""
        ...

    @abstractmethod
    async def save(self, run_id: str, state: AgentState) -> None:
        ...

    @abstractmethod
    async def clear(self, run_id: str) -> None:
        """Remove the saved state. Clearing an unknown run id is not an error."""
        ...


class InMemoryStateStore(StateStore):
    def __init__(self) -> None:
        self._snapshots: dict[str, str] = {}

    async def load(self, run_id: str) -> Optional[AgentState]:
        snapshot = self._snapshots.get(run_id)
        if snapshot is None:
            return None
        try:
            return AgentState.model_validate_json(snapshot)
        except ValidationError as e:
            raise StateStoreError(f"Corrupt state snapshot for run {run_id}: {e}") from e

    async def save(self, run_id: str, state: AgentState) -> None:
        self._snapshots[run_id] = state.model_dump_json()

    async def clear(self, run_id: str) -> None:
        self._snapshots.pop(run_id, None)

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)
