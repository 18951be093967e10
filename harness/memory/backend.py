"""State backends — per-session holders of AgentState."""

from __future__ import annotations

import abc
import copy
from typing import Any

from harness.agent.state import STATE_FIELDS, AgentState
from harness.memory.store import SessionStore


def _check_fields(changes: dict[str, Any]) -> None:
    unknown = set(changes) - STATE_FIELDS
    if unknown:
        raise ValueError(f"Unknown AgentState fields: {sorted(unknown)}")


class StateBackend(abc.ABC):
    """Holder of one session's AgentState.

    ``get_state`` returns a copy; callers mutate state only through
    ``set_state`` (partial replacement of top-level fields).
    """

    @abc.abstractmethod
    def get_state(self) -> AgentState:
        ...

    @abc.abstractmethod
    def set_state(self, **changes: Any) -> None:
        ...


class InMemoryStateBackend(StateBackend):
    """Process-local backend. State lives as long as the object."""

    def __init__(self, state: AgentState | None = None):
        self._state = state.model_copy(deep=True) if state else AgentState()

    def get_state(self) -> AgentState:
        return self._state.model_copy(deep=True)

    def set_state(self, **changes: Any) -> None:
        _check_fields(changes)
        self._state = self._state.model_copy(update=copy.deepcopy(changes))


class SQLiteStateBackend(StateBackend):
    """Durable backend over a SessionStore, keyed by session id.

    The session row is created on first access. Message writes that only
    extend the stored history are appended; anything else replaces the log.
    """

    def __init__(self, store: SessionStore, session_id: str):
        self.store = store
        self.session_id = session_id
        self._state: AgentState | None = None

    def _load(self) -> AgentState:
        if self._state is None:
            row = self.store.get_or_create_session(self.session_id)
            self._state = AgentState(
                messages=self.store.get_messages(self.session_id),
                summary=row.get("summary"),
                metadata=row.get("metadata") or {},
                todos=row.get("todos") or [],
                tasks=row.get("tasks") or [],
            )
        return self._state

    def get_state(self) -> AgentState:
        return self._load().model_copy(deep=True)

    def set_state(self, **changes: Any) -> None:
        _check_fields(changes)
        state = self._load()
        changes = copy.deepcopy(changes)

        if "messages" in changes:
            new = list(changes["messages"])
            old = state.messages
            if len(new) >= len(old) and new[: len(old)] == old:
                self.store.add_messages(self.session_id, new[len(old):])
            else:
                self.store.replace_messages(self.session_id, new)

        row_fields = {
            k: v for k, v in changes.items() if k in ("summary", "metadata", "todos", "tasks")
        }
        if row_fields:
            self.store.update_session(self.session_id, **row_fields)

        self._state = state.model_copy(update=changes)

    def reload(self) -> AgentState:
        """Drop the cached state and read it back from the store."""
        self._state = None
        return self.get_state()
