from turnpilot.memory.state_manager import StateManager, StateOptions
from turnpilot.memory.state_store import InMemoryStateStore, StateStore

__all__ = ["StateManager", "StateOptions", "StateStore", "InMemoryStateStore"]
