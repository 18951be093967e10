"""Tests for ContextCompactor — restorable compression and summarization."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from harness.agent.compaction import (
    SUMMARY_HEADER,
    ContextCompactor,
    estimate_tokens,
    extract_text,
    format_transcript,
    is_error_message,
)
from harness.agent.errors import ErrorLedger
from harness.core.config.schema import ContextConfig
from harness.core.errors import SummarizationError
from harness.memory.backend import InMemoryStateBackend


@pytest.fixture
def provider():
    p = MagicMock()
    p.asummarize = AsyncMock(return_value="Earlier turns: greetings exchanged.")
    return p


@pytest.fixture
def backend():
    return InMemoryStateBackend()


@pytest.fixture
def ledger():
    return ErrorLedger()


@pytest.fixture
def compactor(provider, backend, ledger):
    return ContextCompactor(ContextConfig(), ledger, provider, backend, "test/model")


def _tool_pair(call_id, name, args, content, **kwargs):
    return [
        AIMessage(content="", tool_calls=[{"id": call_id, "name": name, "args": args}]),
        ToolMessage(content=content, tool_call_id=call_id, name=name, **kwargs),
    ]


def _conversation(n):
    return [
        HumanMessage(content=f"question {i}") if i % 2 == 0 else AIMessage(content=f"answer {i}")
        for i in range(n)
    ]


def _chars(messages):
    return sum(len(extract_text(m)) for m in messages)


# ── Helpers ─────────────────────────────────────────────────


def test_extract_text_includes_tool_calls():
    msg = AIMessage(content="let me look", tool_calls=[{"id": "1", "name": "grep", "args": {"q": "x"}}])
    text = extract_text(msg)
    assert "let me look" in text
    assert '[Tool Call: grep with args: {"q": "x"}]' in text


def test_estimate_tokens():
    assert estimate_tokens([HumanMessage(content="x" * 400)]) == 100


def test_is_error_message_status_is_authoritative():
    assert is_error_message(ToolMessage(content="all good", tool_call_id="1", status="error"))
    assert is_error_message(ToolMessage(content="Build FAILED", tool_call_id="1"))
    assert not is_error_message(ToolMessage(content="ok", tool_call_id="1"))
    assert not is_error_message(AIMessage(content="an error happened"))


def test_format_transcript_labels_and_clips():
    text = format_transcript(
        [HumanMessage(content="hi"), AIMessage(content="y" * 50)], max_chars=10,
    )
    assert text.startswith("[1] User:\nhi")
    assert "\n\n---\n\n[2] Assistant:\nyyyyyyyyyy...[truncated]" in text


# ── Phase 1: restorable compression ─────────────────────────


def test_file_read_is_replaced_by_reference(compactor):
    messages = _tool_pair("c1", "readFile", {"path": "/a.ts"}, "x" * 5000)
    result = compactor.compress(messages)

    assert result[0] is messages[0]
    content = result[1].content
    assert "/a.ts" in content
    assert "5000" in content
    assert content == (
        "[File: /a.ts - 5000 chars read. Use readFile() again if you need the full content.]"
    )
    assert result[1].tool_call_id == "c1"


def test_command_output_is_replaced_by_reference(compactor):
    messages = _tool_pair("c1", "bash", {"command": "ls -la"}, "line\n" * 1000)
    result = compactor.compress(messages)
    assert result[1].content == '[Command "ls -la" output: 5000 chars. Run again if needed.]'


def test_long_command_preview_is_truncated(compactor):
    command = "npm run test -- --reporter=verbose --coverage --watch=false --bail"
    messages = _tool_pair("c1", "bash", {"command": command}, "ok\n" * 2000)
    content = compactor.compress(messages)[1].content
    assert f'[Command "{command[:50]}..." output: 6000 chars.' in content


def test_other_tool_keeps_digest(compactor):
    body = "\n".join(f"match {i}: " + "z" * 290 for i in range(20))
    messages = _tool_pair("c1", "grep", {"pattern": "z"}, body)
    content = compactor.compress(messages)[1].content

    assert content.startswith(f"[grep result: {len(body)} chars.")
    assert "First lines:" in content
    assert "Last lines:" in content
    assert "match 0:" in content
    assert "match 19:" in content


def test_large_assistant_response_is_digested(compactor):
    msg = AIMessage(content="y" * 4000)
    content = compactor.compress([msg])[0].content
    assert content.startswith("[Previous response: 4000 chars. First lines:")
    assert len(content) < 4000


def test_small_and_user_messages_untouched(compactor):
    messages = [
        SystemMessage(content="s" * 5000),
        HumanMessage(content="h" * 5000),
        *_tool_pair("c1", "readFile", {"path": "/b.ts"}, "short"),
    ]
    result = compactor.compress(messages)
    assert [m.content for m in result] == [m.content for m in messages]


def test_errors_never_compressed_and_logged(compactor, ledger):
    error_text = "Error: compilation failed\n" + "x" * 5000
    messages = _tool_pair("c1", "bash", {"command": "make"}, error_text, status="error")
    result = compactor.compress(messages)

    assert result[1].content == error_text
    assert len(ledger) == 1
    assert ledger.entries[0].tool_name == "bash"

    # Re-running compression over the same history does not inflate the count
    compactor.compress(messages)
    assert ledger.entries[0].occurrence_count == 1


def test_original_messages_not_mutated(compactor):
    messages = _tool_pair("c1", "readFile", {"path": "/a.ts"}, "x" * 5000)
    compactor.compress(messages)
    assert messages[1].content == "x" * 5000


# ── Phase 2: summarization ──────────────────────────────────


@pytest.mark.asyncio
async def test_no_summarization_under_limits(compactor, provider):
    messages = _conversation(10)
    result = await compactor.compact(messages, max_messages=30)
    assert result == messages
    provider.asummarize.assert_not_awaited()


@pytest.mark.asyncio
async def test_forty_messages_keep_sixteen(compactor, provider, backend):
    messages = _conversation(40)
    events = []

    result = await compactor.compact(messages, max_messages=32, listener=events.append)

    assert len(result) == 17
    assert isinstance(result[0], SystemMessage)
    assert result[0].content.startswith(SUMMARY_HEADER)
    assert result[1:] == messages[24:]
    assert backend.get_state().summary == "Earlier turns: greetings exchanged."

    provider.asummarize.assert_awaited_once()
    transcript, existing = provider.asummarize.await_args.args
    assert existing == "No previous summary."
    assert "[1] User:\nquestion 0" in transcript
    assert "question 24" not in transcript
    assert provider.asummarize.await_args.kwargs["model"] == "test/model"

    assert [e.status for e in events] == ["starting", "in_progress", "complete"]
    assert events[-1].summarized_count == 24
    assert events[-1].kept_count == 16


@pytest.mark.asyncio
async def test_size_is_monotonic(compactor, provider):
    provider.asummarize.return_value = "S" * 10_000
    messages = _conversation(40)
    result = await compactor.compact(messages, max_messages=32)
    assert _chars(result) <= _chars(messages)


@pytest.mark.asyncio
async def test_existing_summary_is_merged(compactor, provider, backend):
    backend.set_state(summary="User likes Python.")
    await compactor.compact(_conversation(40), max_messages=32)
    assert provider.asummarize.await_args.args[1] == "User likes Python."


@pytest.mark.asyncio
async def test_unchanged_history_summarized_once(compactor, provider):
    messages = _conversation(40)
    first = await compactor.compact(messages, max_messages=32)
    second = await compactor.compact(messages, max_messages=32)

    provider.asummarize.assert_awaited_once()
    assert second == first


@pytest.mark.asyncio
async def test_summarizer_failure_keeps_suffix(compactor, provider, backend):
    provider.asummarize.side_effect = SummarizationError("empty summary")
    messages = _conversation(40)
    events = []

    result = await compactor.compact(messages, max_messages=32, listener=events.append)

    assert result == messages[24:]
    assert backend.get_state().summary is None
    assert events[-1].status == "failed"
    assert "empty summary" in events[-1].error


@pytest.mark.asyncio
async def test_kept_suffix_never_starts_with_tool_message(compactor):
    messages = [
        HumanMessage(content="q0"),
        AIMessage(content="a1"),
        HumanMessage(content="q2"),
        AIMessage(content="a3"),
        *_tool_pair("c1", "grep", {"pattern": "x"}, "found it"),
        AIMessage(content="a6"),
        HumanMessage(content="q7"),
        AIMessage(content="a8"),
    ]
    result = await compactor.compact(messages, max_messages=8)

    assert isinstance(result[0], SystemMessage)
    assert not isinstance(result[1], ToolMessage)
    assert result[1:] == messages[6:]


@pytest.mark.asyncio
async def test_errors_in_prefix_go_to_ledger_not_summary(compactor, provider, ledger):
    messages = [
        *_tool_pair("c1", "bash", {"command": "make"}, "make: *** failed", status="error"),
        *_conversation(40),
    ]
    await compactor.compact(messages, max_messages=32)

    transcript = provider.asummarize.await_args.args[0]
    assert "make: ***" not in transcript
    assert ledger.entries[0].error == "make: *** failed"


@pytest.mark.asyncio
async def test_token_budget_triggers_summarization(compactor, provider):
    messages = [HumanMessage(content="x" * 4000) for _ in range(6)]
    result = await compactor.compact(messages, max_messages=10, token_budget=1000)
    provider.asummarize.assert_awaited_once()
    assert isinstance(result[0], SystemMessage)
    assert result[1:] == messages[1:]
