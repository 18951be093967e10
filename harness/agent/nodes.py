"""Graph nodes — reason, execute_tools, respond."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langgraph.config import get_stream_writer
from loguru import logger

from harness.agent.errors import ErrorLedger
from harness.agent.hooks import HookComposer, _maybe_await
from harness.agent.state import GraphState, PreparedCall, StepContext, StepResult, ToolError
from harness.agent.tools import build_tool_definitions, needs_approval
from harness.core.errors import AgentAborted
from harness.core.providers.base import BaseLLMProvider

Approver = Callable[[str, dict[str, Any]], Awaitable[bool] | bool]
StepCallback = Callable[[StepResult], Any]


def make_nodes(
    call: PreparedCall,
    provider: BaseLLMProvider,
    hooks: HookComposer,
    ledger: ErrorLedger,
    max_tokens: int = 4096,
    approver: Approver | None = None,
    step_callbacks: list[StepCallback] | None = None,
    streaming: bool = False,
):
    """
    Create node functions closed over one prepared call.

    Returns dict of {node_name: callable} for graph registration.
    """
    tool_map = call.tools
    tool_defs = build_tool_definitions(tool_map) if tool_map else None
    prior_count = len(call.messages)
    signal = call.abort_signal

    async def reason(state: GraphState) -> dict[str, Any]:
        """Apply per-step overrides, then call the LLM once."""
        if signal is not None and signal.is_set():
            raise AgentAborted(f"Aborted before step {state['iteration']}")

        step = state["iteration"]
        overrides: dict[str, Any] = {}
        if hooks.has_prepare_step:
            new_messages = state["messages"][prior_count:]
            overrides = await hooks.prepare_step(
                StepContext(
                    step_number=step,
                    model=call.model,
                    system_prompt=state["system_prompt"],
                    messages=list(state["messages"]),
                    steps=[m for m in new_messages if isinstance(m, AIMessage)],
                )
            )

        model = overrides.get("model") or call.model
        system = overrides.get("system") or state["system_prompt"]
        history = overrides.get("messages") or state["messages"]
        temperature = overrides.get("temperature", call.temperature)

        defs = tool_defs
        active = overrides.get("active_tools")
        if active is not None:
            defs = build_tool_definitions(
                {name: t for name, t in tool_map.items() if name in active}
            ) or None

        messages = [{"role": "system", "content": system}]
        messages.extend(_langchain_to_dict(m) for m in history)
        kwargs = {
            "messages": messages,
            "model": model,
            "tools": defs,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        if streaming:
            ai_message = await _stream_completion(provider, kwargs, signal)
        else:
            ai_message = await _until_aborted(provider.achat(**kwargs), signal)

        # Log tool calls for debugging
        if ai_message.tool_calls:
            names = [tc["name"] for tc in ai_message.tool_calls]
            logger.debug(f"Step {step}: LLM tool calls: {names}")
        else:
            snippet = _text(ai_message)[:80]
            logger.debug(f"Step {step}: LLM response (no tools): {snippet!r}")

        usage = ai_message.response_metadata.get("usage", {}) or {}
        return {
            "messages": [ai_message],
            "iteration": step + 1,
            "token_count": state["token_count"] + (usage.get("total_tokens") or 0),
        }

    async def execute_tools(state: GraphState) -> dict[str, Any]:
        """Execute tool calls from the last AI message, one at a time."""
        last_msg = state["messages"][-1]
        results: list[ToolMessage] = []
        errors: list[ToolError] = []

        for tc in last_msg.tool_calls:
            name = tc["name"]
            args = tc.get("args") or {}
            status = "success"

            tool = tool_map.get(name)
            if tool is None:
                content = f"Tool '{name}' not found"
                status = "error"
                errors.append(ToolError(tool_name=name, tool_call_id=tc["id"], error=content, args=args))
                ledger.log(name, content, source_id=tc["id"])
                logger.warning(f"Tool not found: {name}")
            elif await needs_approval(tool, args) and not await _approve(approver, name, args):
                content = (
                    f"Permission denied: '{name}' requires approval "
                    f"and the call was not approved."
                )
                logger.warning(f"Approval denied: tool={name}")
            else:
                try:
                    logger.debug(f"Executing tool: {name}({args})")
                    result = await tool.ainvoke(args)
                    content = result if isinstance(result, str) else json.dumps(
                        result, default=str, ensure_ascii=False,
                    )
                    logger.debug(f"Tool result: {name} → {content[:100]}")
                except Exception as e:
                    content = f"Tool error: {e}"
                    status = "error"
                    errors.append(
                        ToolError(tool_name=name, tool_call_id=tc["id"], error=str(e), args=args)
                    )
                    ledger.log(
                        name,
                        content,
                        context=f"args: {json.dumps(args, default=str)[:200]}",
                        source_id=tc["id"],
                    )
                    logger.error(f"Tool error: {name} → {e}")

            message = ToolMessage(
                content=content, tool_call_id=tc["id"], name=name, status=status,
            )
            results.append(message)
            _emit({
                "type": "tool-result",
                "tool_call_id": tc["id"],
                "tool_name": name,
                "status": status,
                "content": content,
            })

        await _finish_step(state["iteration"] - 1, last_msg, results)
        return {"messages": results, "tool_errors": errors}

    async def respond(state: GraphState) -> dict[str, Any]:
        """Close the final step (a response without tool calls)."""
        last_msg = state["messages"][-1]
        if isinstance(last_msg, AIMessage) and not last_msg.tool_calls:
            await _finish_step(state["iteration"] - 1, last_msg, [])
        return {}

    async def _finish_step(
        step: int, message: BaseMessage, tool_messages: list[ToolMessage],
    ) -> None:
        _emit({"type": "step-finish", "step": step})
        result = StepResult(step_number=step, message=message, tool_messages=tool_messages)
        for callback in step_callbacks or []:
            try:
                await _maybe_await(callback(result))
            except Exception as e:
                logger.error(f"on_step_finish callback failed: {e}")

    return {
        "reason": reason,
        "execute_tools": execute_tools,
        "respond": respond,
    }


def should_continue(state: GraphState) -> str:
    """Conditional edge: after reason, go to tools or respond."""
    last_msg = state["messages"][-1]
    if isinstance(last_msg, AIMessage) and last_msg.tool_calls:
        return "execute_tools"
    return "respond"


def make_step_guard(max_steps: int) -> Callable[[GraphState], str]:
    """Conditional edge after tools: next step, or stop at the step limit."""

    def after_tools(state: GraphState) -> str:
        if state["iteration"] >= max_steps:
            logger.warning(f"Max steps reached ({max_steps}), forcing respond")
            return "respond"
        return "reason"

    return after_tools


# ── Helpers ───────────────────────────────────────────────────


def _emit(event: dict[str, Any]) -> None:
    """Write a custom stream event (no-op outside graph streaming)."""
    try:
        writer = get_stream_writer()
    except RuntimeError:
        return
    writer(event)


async def _approve(approver: Approver | None, name: str, args: dict[str, Any]) -> bool:
    if approver is None:
        return False
    return bool(await _maybe_await(approver(name, args)))


async def _until_aborted(coro: Awaitable[AIMessage], signal: asyncio.Event | None) -> AIMessage:
    """Await the model call, abandoning it if the abort signal fires first."""
    if signal is None:
        return await coro
    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(signal.wait())
    done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    if task in done:
        waiter.cancel()
        return task.result()
    task.cancel()
    raise AgentAborted("Aborted while waiting for the model")


async def _stream_completion(
    provider: BaseLLMProvider, kwargs: dict[str, Any], signal: asyncio.Event | None,
) -> AIMessage:
    """Stream one completion, forwarding text deltas, and return the full message."""
    full: AIMessageChunk | None = None
    async for chunk in provider.astream_chat(**kwargs):
        if signal is not None and signal.is_set():
            raise AgentAborted("Aborted while streaming the model response")
        if isinstance(chunk.content, str) and chunk.content:
            _emit({"type": "text-delta", "text": chunk.content})
        full = chunk if full is None else full + chunk
    if full is None:
        return AIMessage(content="")
    return AIMessage(
        content=full.content,
        tool_calls=full.tool_calls,
        response_metadata=full.response_metadata,
    )


def _text(msg: BaseMessage) -> str:
    content = msg.content
    if isinstance(content, str):
        return content
    return "".join(
        p.get("text", "") if isinstance(p, dict) else str(p) for p in content
    )


def _langchain_to_dict(msg: Any) -> dict[str, Any]:
    """Convert LangChain message to dict for litellm."""
    if isinstance(msg, HumanMessage):
        return {"role": "user", "content": msg.content}
    elif isinstance(msg, AIMessage):
        d: dict[str, Any] = {"role": "assistant", "content": msg.content}
        # Preserve reasoning_content for thinking models
        reasoning = msg.additional_kwargs.get("reasoning_content")
        if reasoning:
            d["reasoning_content"] = reasoning
        if msg.tool_calls:
            d["tool_calls"] = [
                {
                    "id": tc["id"],
                    "type": "function",
                    "function": {"name": tc["name"], "arguments": json.dumps(tc["args"])},
                }
                for tc in msg.tool_calls
            ]
        return d
    elif isinstance(msg, ToolMessage):
        return {
            "role": "tool",
            "tool_call_id": msg.tool_call_id,
            "content": msg.content,
        }
    elif isinstance(msg, SystemMessage):
        return {"role": "system", "content": msg.content}
    else:
        return {"role": "user", "content": str(msg.content)}
