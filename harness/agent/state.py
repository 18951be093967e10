"""State definitions — session AgentState and the LangGraph loop state."""

from __future__ import annotations

import asyncio
import operator
from dataclasses import dataclass, field
from typing import Annotated, Any

from langchain_core.messages import AnyMessage, BaseMessage
from langchain_core.tools import BaseTool
from langgraph.graph import MessagesState
from pydantic import BaseModel, Field


class AgentState(BaseModel):
    """Persistent per-session state.

    ``todos`` and ``tasks`` are opaque to the engine; extensions own their shape.
    """

    messages: list[AnyMessage] = Field(default_factory=list)
    summary: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    todos: list[Any] = Field(default_factory=list)
    tasks: list[Any] = Field(default_factory=list)


STATE_FIELDS = frozenset(AgentState.model_fields)


class ToolError(BaseModel):
    """A tool failure surfaced during a call (after retries)."""

    tool_name: str
    tool_call_id: str
    error: str
    args: dict[str, Any] = Field(default_factory=dict)


class GraphState(MessagesState):
    """
    Extends MessagesState (messages: Annotated[list[BaseMessage], add_messages]).

    Lives only for one invocation of the think/act loop.
    """

    system_prompt: str
    iteration: int
    token_count: int
    tool_errors: Annotated[list[ToolError], operator.add]


@dataclass
class PreparedCall:
    """Everything one generate/stream invocation hands to the loop."""

    model: str
    system_prompt: str
    messages: list[BaseMessage]
    tools: dict[str, BaseTool]
    temperature: float | None = None
    max_steps: int = 20
    abort_signal: asyncio.Event | None = None


@dataclass
class StepContext:
    """Argument passed to ``prepare_step`` hooks before every model call."""

    step_number: int
    model: str
    system_prompt: str
    messages: list[BaseMessage]
    steps: list[BaseMessage] = field(default_factory=list)


@dataclass
class StepResult:
    """One finished think/act iteration, passed to ``on_step_finish`` callbacks."""

    step_number: int
    message: BaseMessage
    tool_messages: list[BaseMessage] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(getattr(self.message, "tool_calls", None))
