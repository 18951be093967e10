"""Tests for HookComposer and ContextBuilder."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from harness.agent.context import ContextBuilder
from harness.agent.errors import ErrorLedger
from harness.agent.hooks import HookComposer, Middleware
from harness.agent.state import AgentState, StepContext


def _ctx(step=0):
    return StepContext(step_number=step, model="m", system_prompt="p", messages=[])


# ── HookComposer ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_modify_system_prompt_is_chained_in_order():
    async def add_b(prompt):
        return prompt + " B"

    hooks = HookComposer([
        Middleware(name="a", modify_system_prompt=lambda p: p + " A"),
        Middleware(name="b", modify_system_prompt=add_b),
    ])
    assert await hooks.modify_system_prompt("base") == "base A B"


@pytest.mark.asyncio
async def test_prepare_step_later_keys_win():
    hooks = HookComposer([
        Middleware(name="a", prepare_step=lambda ctx: {"model": "x", "temperature": 0.1}),
        Middleware(name="b", prepare_step=lambda ctx: None),
        Middleware(name="c", prepare_step=AsyncMock(return_value={"model": "y"})),
    ])
    assert hooks.has_prepare_step
    assert await hooks.prepare_step(_ctx()) == {"model": "y", "temperature": 0.1}


def test_has_prepare_step_false_without_hooks():
    assert not HookComposer([Middleware(name="a")]).has_prepare_step


@pytest.mark.asyncio
async def test_after_model_failure_does_not_stop_later_hooks():
    later = MagicMock()

    def broken(state, result):
        raise RuntimeError("boom")

    hooks = HookComposer([
        Middleware(name="broken", after_model=broken),
        Middleware(name="later", after_model=later),
    ])
    state = AgentState()
    await hooks.after_model(state, "result")
    later.assert_called_once_with(state, "result")


@pytest.mark.asyncio
async def test_on_stream_finish_failure_is_logged():
    later = AsyncMock()
    hooks = HookComposer([
        Middleware(name="broken", on_stream_finish=AsyncMock(side_effect=ValueError("x"))),
        Middleware(name="later", on_stream_finish=later),
    ])
    await hooks.on_stream_finish("response")
    later.assert_awaited_once_with("response")


@pytest.mark.asyncio
async def test_input_available_and_stream_ready_failures_are_isolated():
    seen = []
    hooks = HookComposer([
        Middleware(name="bad", on_input_available=MagicMock(side_effect=KeyError("k")),
                   on_stream_ready=MagicMock(side_effect=KeyError("k"))),
        Middleware(name="good", on_input_available=lambda n, a: seen.append((n, a)),
                   on_stream_ready=seen.append),
    ])
    await hooks.notify_input_available("bash", {"command": "ls"})
    await hooks.on_stream_ready("writer")
    assert seen == [("bash", {"command": "ls"}), "writer"]


@pytest.mark.asyncio
async def test_async_input_available_and_stream_ready_are_awaited():
    seen = []

    async def on_input(name, args):
        seen.append((name, args))

    async def on_ready(writer):
        seen.append(writer)

    hooks = HookComposer([Middleware(name="a", on_input_available=on_input, on_stream_ready=on_ready)])
    await hooks.notify_input_available("bash", {"command": "ls"})
    await hooks.on_stream_ready("writer")
    assert seen == [("bash", {"command": "ls"}), "writer"]


@pytest.mark.asyncio
async def test_wait_ready_runs_once_per_middleware():
    ready = AsyncMock()
    hooks = HookComposer([Middleware(name="a", wait_ready=ready)])
    await hooks.wait_ready()
    await hooks.wait_ready()
    ready.assert_awaited_once()


def test_add_accepts_single_or_list():
    hooks = HookComposer()
    hooks.add(Middleware(name="a"))
    hooks.add([Middleware(name="b"), Middleware(name="c")])
    assert [mw.name for mw in hooks.middleware] == ["a", "b", "c"]
    assert len(hooks) == 3


# ── ContextBuilder ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_prompt_layer_order():
    ledger = ErrorLedger()
    ledger.log("bash", "command not found: foo")
    hooks = HookComposer([Middleware(name="fs", modify_system_prompt=lambda p: p + "\n\n## Filesystem")])
    builder = ContextBuilder("You are TestAgent.", hooks, ledger, custom_instructions="Be terse.")

    prompt = await builder.build(summary="We fixed the parser.")

    positions = [
        prompt.index("You are TestAgent."),
        prompt.index("## Filesystem"),
        prompt.index("## Custom Instructions\nBe terse."),
        prompt.index("## Previous Context Summary\nWe fixed the parser."),
        prompt.index("## Recent Errors (Do NOT Repeat These)"),
    ]
    assert positions == sorted(positions)


@pytest.mark.asyncio
async def test_prompt_omits_empty_layers():
    builder = ContextBuilder("Base.", HookComposer(), ErrorLedger())
    assert await builder.build() == "Base."

