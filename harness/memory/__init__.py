"""State store — session-keyed AgentState holders."""

from harness.memory.backend import InMemoryStateBackend, SQLiteStateBackend, StateBackend
from harness.memory.store import SessionStore

__all__ = ["InMemoryStateBackend", "SQLiteStateBackend", "SessionStore", "StateBackend"]
