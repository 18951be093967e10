"""AgentRunner — orchestrator between the state backend and the LangGraph loop."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, convert_to_messages
from langchain_core.tools import BaseTool
from loguru import logger

from harness.agent.compaction import ContextCompactor, SummarizationListener
from harness.agent.context import ContextBuilder
from harness.agent.errors import ErrorLedger
from harness.agent.graph import create_graph
from harness.agent.hooks import HookComposer, Middleware
from harness.agent.nodes import Approver, StepCallback
from harness.agent.state import AgentState, PreparedCall, ToolError
from harness.agent.streaming import StreamResponse, StreamResult, StreamWriter
from harness.agent.tools import ToolRegistry, filter_tools
from harness.core.config import Config, load_config
from harness.core.providers import BaseLLMProvider, LiteLLMProvider
from harness.memory import InMemoryStateBackend, SessionStore, SQLiteStateBackend, StateBackend


@dataclass
class GenerateResult:
    """Outcome of a non-streaming call."""

    text: str
    messages: list[BaseMessage]
    state: AgentState
    tool_errors: list[ToolError] | None = None
    steps: int = 0
    token_count: int = 0


@dataclass
class _LoopOutcome:
    new_messages: list[BaseMessage] = field(default_factory=list)
    tool_errors: list[ToolError] = field(default_factory=list)
    steps: int = 0
    token_count: int = 0


class AgentRunner:
    """
    Per-session agent driver.

    Flow (one call):
        1. Merge caller messages / state overrides into the backend
        2. Prepare: compact history, build system prompt, resolve tools
        3. Run the reason ⇄ execute_tools graph (stateless, compiled per call)
        4. Append only the new messages to the backend
        5. Run after_model (generate) or on_stream_finish (stream) hooks
    """

    def __init__(
        self,
        config: Config,
        provider: BaseLLMProvider | None = None,
        backend: StateBackend | None = None,
        middleware: list[Middleware] | None = None,
        tools: list[BaseTool] | dict[str, BaseTool] | None = None,
        approver: Approver | None = None,
        on_step_finish: StepCallback | None = None,
    ):
        self.config = config
        self.provider = provider or LiteLLMProvider(config)
        self.backend = backend or InMemoryStateBackend()
        self.approver = approver
        self.on_step_finish = on_step_finish

        agent = config.agent
        self.hooks = HookComposer(middleware)
        self.ledger = ErrorLedger(config.errors)
        self.registry = ToolRegistry(
            self.hooks,
            custom_tools=tools,
            approval=agent.tools_requiring_approval,
            blocked_tools=agent.blocked_tools,
            max_retries=agent.max_retries,
            backoff_ms=agent.retry_backoff_ms,
        )
        self.compactor = ContextCompactor(
            config.context, self.ledger, self.provider, self.backend, config.summary_model,
        )
        self.context = ContextBuilder(
            agent.instructions, self.hooks, self.ledger, agent.system_prompt,
        )
        self._pending: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        config: Config | str | None = None,
        session_id: str | None = None,
        **kwargs: Any,
    ) -> AgentRunner:
        """Build a runner from a Config (or YAML path).

        With a ``session_id`` the state is kept in the SQLite store at
        ``config.database.path``; otherwise it lives in memory.
        """
        if not isinstance(config, Config):
            config = load_config(config)
        if session_id is not None and "backend" not in kwargs:
            store = SessionStore(str(config.db_path))
            kwargs["backend"] = SQLiteStateBackend(store, session_id)
        return cls(config, **kwargs)

    # ── Public API ──────────────────────────────────────────

    async def generate(
        self,
        messages: list | None = None,
        input: str | None = None,
        state: dict[str, Any] | None = None,
        abort_signal: asyncio.Event | None = None,
        timeout: float | None = None,
        on_step_finish: StepCallback | None = None,
    ) -> GenerateResult:
        """Run one non-streaming call and persist its new messages.

        Parameters
        ----------
        messages : list, optional
            Replaces the stored conversation (BaseMessage objects, dicts
            or (role, content) tuples).
        input : str, optional
            Appended as a user message.
        state : dict, optional
            Overrides for summary / metadata / todos / tasks.
        abort_signal : asyncio.Event, optional
            Checked before each model call and raced against it.
        timeout : float, optional
            Seconds bounding the whole invocation.
        on_step_finish : callable, optional
            Runs after the config-level callback on every step.

        Returns
        -------
        GenerateResult
        """
        current = self._merge_input(messages, input, state)
        call = await self.prepare_call(current.messages, abort_signal=abort_signal)

        outcome = await self._run_loop(
            call,
            streaming=False,
            on_step_finish=on_step_finish,
            timeout=timeout,
        )

        self.backend.set_state(messages=[*current.messages, *outcome.new_messages])
        result = GenerateResult(
            text=_final_text(outcome.new_messages),
            messages=outcome.new_messages,
            state=self.backend.get_state(),
            tool_errors=outcome.tool_errors or None,
            steps=outcome.steps,
            token_count=outcome.token_count,
        )
        await self.hooks.after_model(self.backend.get_state(), result)
        return result

    async def stream(
        self,
        messages: list | None = None,
        input: str | None = None,
        state: dict[str, Any] | None = None,
        abort_signal: asyncio.Event | None = None,
        timeout: float | None = None,
        on_step_finish: StepCallback | None = None,
    ) -> StreamResult:
        """Start a streaming call and return its incremental result.

        Middleware receive the stream writer before the first token. The
        final response is persisted by a detached completion task; its
        failures are logged and never reach the caller.
        """
        current = self._merge_input(messages, input, state)
        result = StreamResult()
        await self.hooks.on_stream_ready(result.writer)

        call = await self.prepare_call(
            current.messages,
            writer=result.writer,
            abort_signal=abort_signal,
        )
        result.start(
            self._produce(result, call, on_step_finish=on_step_finish, timeout=timeout)
        )

        task = asyncio.create_task(self._complete_stream(result))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return result

    async def prepare_call(
        self,
        messages: list[BaseMessage],
        writer: StreamWriter | None = None,
        abort_signal: asyncio.Event | None = None,
    ) -> PreparedCall:
        """Compact history, build the system prompt and resolve tools."""
        agent = self.config.agent
        listener: SummarizationListener | None = (
            writer.write_summarization if writer is not None else None
        )
        compacted = await self.compactor.compact(
            messages, max_messages=agent.max_context_messages, listener=listener,
        )
        system_prompt = await self.context.build(self.backend.get_state().summary)

        tools = await self.registry.resolve()
        if agent.allowed_tools is not None:
            tools = filter_tools(tools, allowed_tools=agent.allowed_tools)

        logger.debug(
            f"Prepared call: {len(messages)} → {len(compacted)} messages, "
            f"{len(tools)} tools, prompt {len(system_prompt)} chars"
        )
        return PreparedCall(
            model=agent.model,
            system_prompt=system_prompt,
            messages=compacted,
            tools=tools,
            temperature=agent.temperature,
            max_steps=agent.max_steps,
            abort_signal=abort_signal,
        )

    # ── State helpers ───────────────────────────────────────

    def get_state(self) -> AgentState:
        return self.backend.get_state()

    def export_state(self) -> AgentState:
        return self.backend.get_state().model_copy(deep=True)

    def import_state(self, state: AgentState | dict[str, Any]) -> None:
        if isinstance(state, AgentState):
            state = {name: getattr(state, name) for name in AgentState.model_fields}
        self.backend.set_state(**state)

    def add_middleware(self, middleware: Middleware) -> None:
        """Register an extension; the tool cache rebuilds on next resolve."""
        self.hooks.add(middleware)

    @property
    def tools(self) -> dict[str, BaseTool]:
        """Last resolved (wrapped) tool set."""
        return self.registry.cached

    async def wait_idle(self) -> None:
        """Wait for detached stream completions to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Internals ───────────────────────────────────────────

    def _merge_input(
        self,
        messages: list | None,
        input: str | None,
        state: dict[str, Any] | None,
    ) -> AgentState:
        changes: dict[str, Any] = dict(state or {})
        changes.pop("messages", None)
        if messages is not None:
            changes["messages"] = convert_to_messages(messages)
        if input is not None:
            base = changes.get("messages", self.backend.get_state().messages)
            changes["messages"] = [*base, HumanMessage(content=input)]
        if changes:
            self.backend.set_state(**changes)
        return self.backend.get_state()

    def _step_callbacks(self, on_step_finish: StepCallback | None) -> list[StepCallback]:
        return [cb for cb in (self.on_step_finish, on_step_finish) if cb is not None]

    def _graph_input(self, call: PreparedCall) -> dict[str, Any]:
        # add_messages assigns ids in place; hand the graph copies
        return {
            "messages": [m.model_copy() for m in call.messages],
            "system_prompt": call.system_prompt,
            "iteration": 0,
            "token_count": 0,
            "tool_errors": [],
        }

    def _graph_config(self, call: PreparedCall) -> dict[str, Any]:
        return {"recursion_limit": call.max_steps * 2 + 5}

    async def _run_loop(
        self,
        call: PreparedCall,
        streaming: bool,
        on_step_finish: StepCallback | None,
        timeout: float | None,
    ) -> _LoopOutcome:
        graph = create_graph(
            call,
            self.provider,
            self.hooks,
            self.ledger,
            max_tokens=self.config.agent.max_tokens,
            approver=self.approver,
            step_callbacks=self._step_callbacks(on_step_finish),
            streaming=streaming,
        )
        final = await asyncio.wait_for(
            graph.ainvoke(self._graph_input(call), config=self._graph_config(call)),
            timeout=timeout,
        )
        return _outcome(final, len(call.messages))

    async def _produce(
        self,
        result: StreamResult,
        call: PreparedCall,
        on_step_finish: StepCallback | None,
        timeout: float | None,
    ) -> None:
        """Run the graph, forwarding its events into the stream result."""
        graph = create_graph(
            call,
            self.provider,
            self.hooks,
            self.ledger,
            max_tokens=self.config.agent.max_tokens,
            approver=self.approver,
            step_callbacks=self._step_callbacks(on_step_finish),
            streaming=True,
        )
        final: dict[str, Any] = {"messages": list(call.messages)}

        async def _drive() -> None:
            async for mode, chunk in graph.astream(
                self._graph_input(call),
                config=self._graph_config(call),
                stream_mode=["custom", "values"],
            ):
                if mode == "custom":
                    result.emit(chunk)
                elif mode == "values":
                    _emit_tool_calls(result, final, chunk)
                    final.update(chunk)

        try:
            await asyncio.wait_for(_drive(), timeout=timeout)
        except Exception as e:
            logger.error(f"Stream failed: {e}")
            result.fail(e)
            return

        outcome = _outcome(final, len(call.messages))
        result.finish(
            StreamResponse(
                text=_final_text(outcome.new_messages),
                messages=outcome.new_messages,
                tool_errors=outcome.tool_errors,
                steps=outcome.steps,
                token_count=outcome.token_count,
            )
        )

    async def _complete_stream(self, result: StreamResult) -> None:
        """Persist the streamed response and run on_stream_finish hooks."""
        try:
            response = await result.response
            previous = self.backend.get_state().messages
            self.backend.set_state(messages=[*previous, *response.messages])
            await self.hooks.on_stream_finish(response)
        except Exception:
            logger.exception("Stream completion error")


# ── Helpers ───────────────────────────────────────────────────


def _outcome(final: dict[str, Any], prior_count: int) -> _LoopOutcome:
    return _LoopOutcome(
        new_messages=list(final.get("messages", [])[prior_count:]),
        tool_errors=list(final.get("tool_errors", [])),
        steps=final.get("iteration", 0),
        token_count=final.get("token_count", 0),
    )


def _emit_tool_calls(result: StreamResult, previous: dict[str, Any], values: dict[str, Any]) -> None:
    """Emit a tool-call event for each tool call on a newly added AI message."""
    seen = len(previous.get("messages", []))
    for msg in values.get("messages", [])[seen:]:
        if isinstance(msg, AIMessage):
            for tc in msg.tool_calls:
                result.emit({
                    "type": "tool-call",
                    "tool_call_id": tc["id"],
                    "tool_name": tc["name"],
                    "args": tc["args"],
                })


def _final_text(messages: list[BaseMessage]) -> str:
    """Get final assistant text from the new messages."""
    for msg in reversed(messages):
        if isinstance(msg, AIMessage) and msg.content and not msg.tool_calls:
            content = msg.content
            if isinstance(content, str):
                return content
            return "".join(
                p.get("text", "") if isinstance(p, dict) else str(p) for p in content
            )
    return ""
