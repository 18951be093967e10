"""Middleware records and the HookComposer that applies them in order."""

from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from langchain_core.tools import BaseTool
from loguru import logger

from harness.agent.state import AgentState, StepContext


@dataclass
class Middleware:
    """An extension contributing tools and/or lifecycle hooks.

    Every hook is optional and may be a plain function or a coroutine
    function. Extensions never receive a reference to the runner itself,
    only the documented hook arguments.

    Hooks
    -----
    modify_system_prompt(prompt) -> prompt
    prepare_step(StepContext) -> dict | None
        Keys: ``model``, ``active_tools``, ``system``, ``messages``, ``temperature``.
    after_model(AgentState, GenerateResult)
    on_input_available(tool_name, args)
    wait_ready()
    on_stream_ready(writer)
    on_stream_finish(StreamResponse)
    """

    name: str
    tools: list[BaseTool] = field(default_factory=list)
    modify_system_prompt: Callable[[str], Any] | None = None
    prepare_step: Callable[[StepContext], Any] | None = None
    after_model: Callable[[AgentState, Any], Any] | None = None
    on_input_available: Callable[[str, dict[str, Any]], Any] | None = None
    wait_ready: Callable[[], Any] | None = None
    on_stream_ready: Callable[[Any], Any] | None = None
    on_stream_finish: Callable[[Any], Any] | None = None

    @property
    def tool_map(self) -> dict[str, BaseTool]:
        return {t.name: t for t in self.tools}


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class HookComposer:
    """Applies middleware hooks sequentially, in registration order."""

    def __init__(self, middleware: list[Middleware] | None = None):
        self.middleware: list[Middleware] = list(middleware or [])
        self._ready: set[int] = set()

    def add(self, middleware: Middleware | list[Middleware]) -> None:
        if isinstance(middleware, list):
            self.middleware.extend(middleware)
        else:
            self.middleware.append(middleware)

    def __len__(self) -> int:
        return len(self.middleware)

    @property
    def has_prepare_step(self) -> bool:
        return any(mw.prepare_step for mw in self.middleware)

    async def wait_ready(self) -> None:
        """Await each middleware's ``wait_ready`` once, before first use."""
        for mw in self.middleware:
            if mw.wait_ready and id(mw) not in self._ready:
                await _maybe_await(mw.wait_ready())
                self._ready.add(id(mw))

    async def modify_system_prompt(self, prompt: str) -> str:
        """Chain prompt modifiers; each sees the previous one's output."""
        for mw in self.middleware:
            if mw.modify_system_prompt:
                prompt = await _maybe_await(mw.modify_system_prompt(prompt))
        return prompt

    async def prepare_step(self, context: StepContext) -> dict[str, Any]:
        """Merge per-step overrides left-to-right; later keys win."""
        overrides: dict[str, Any] = {}
        for mw in self.middleware:
            if mw.prepare_step:
                result = await _maybe_await(mw.prepare_step(context))
                if result:
                    overrides.update(result)
        return overrides

    async def notify_input_available(self, tool_name: str, args: dict[str, Any]) -> None:
        for mw in self.middleware:
            if mw.on_input_available:
                try:
                    await _maybe_await(mw.on_input_available(tool_name, args))
                except Exception as e:
                    logger.warning(f"on_input_available hook failed ({mw.name}): {e}")

    async def after_model(self, state: AgentState, result: Any) -> None:
        for mw in self.middleware:
            if mw.after_model:
                try:
                    await _maybe_await(mw.after_model(state, result))
                except Exception as e:
                    logger.error(f"after_model hook failed ({mw.name}): {e}")

    async def on_stream_ready(self, writer: Any) -> None:
        for mw in self.middleware:
            if mw.on_stream_ready:
                try:
                    await _maybe_await(mw.on_stream_ready(writer))
                except Exception as e:
                    logger.warning(f"on_stream_ready hook failed ({mw.name}): {e}")

    async def on_stream_finish(self, result: Any) -> None:
        for mw in self.middleware:
            if mw.on_stream_finish:
                try:
                    await _maybe_await(mw.on_stream_finish(result))
                except Exception as e:
                    logger.error(f"on_stream_finish hook failed ({mw.name}): {e}")
