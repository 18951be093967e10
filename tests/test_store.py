"""Tests for harness.memory — SessionStore and state backends."""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from harness.agent.state import AgentState
from harness.memory import InMemoryStateBackend, SessionStore, SQLiteStateBackend


@pytest.fixture
def store(tmp_path):
    return SessionStore(str(tmp_path / "test.db"))


# ── SessionStore ────────────────────────────────────────────


def test_sessions(store):
    sid = store.create_session()
    session = store.get_session(sid)
    assert session["session_id"] == sid
    assert session["summary"] is None
    assert session["metadata"] == {}
    assert session["todos"] == []

    store.update_session(sid, summary="talked", metadata={"k": 1}, todos=[{"t": "x"}])
    session = store.get_session(sid)
    assert session["summary"] == "talked"
    assert session["metadata"] == {"k": 1}
    assert session["todos"] == [{"t": "x"}]

    assert store.get_session("nope") is None


def test_update_session_rejects_unknown_fields(store):
    sid = store.create_session("s1")
    with pytest.raises(ValueError):
        store.update_session(sid, token_count=5)


def test_messages_roundtrip(store):
    sid = store.create_session("s1")
    store.add_messages(sid, [
        HumanMessage(content="hi"),
        AIMessage(content="", tool_calls=[{"id": "c1", "name": "echo", "args": {"text": "hi"}}]),
        ToolMessage(content="hi", tool_call_id="c1", name="echo", status="error"),
    ])
    msgs = store.get_messages(sid)

    assert [m.type for m in msgs] == ["human", "ai", "tool"]
    assert msgs[1].tool_calls[0]["name"] == "echo"
    assert msgs[2].tool_call_id == "c1"
    assert msgs[2].status == "error"
    assert store.count_messages(sid) == 3


def test_replace_messages(store):
    sid = store.create_session("s1")
    store.add_messages(sid, [HumanMessage(content="a"), HumanMessage(content="b")])
    store.replace_messages(sid, [HumanMessage(content="c")])
    assert [m.content for m in store.get_messages(sid)] == ["c"]


def test_list_and_delete_sessions(store):
    store.create_session("s1")
    store.create_session("s2")
    store.add_messages("s2", [HumanMessage(content="x")])

    listed = {s["session_id"]: s for s in store.list_sessions()}
    assert set(listed) == {"s1", "s2"}
    assert listed["s2"]["message_count"] == 1

    assert store.delete_session("s2")
    assert store.get_messages("s2") == []
    assert not store.delete_session("s2")


# ── InMemoryStateBackend ────────────────────────────────────


def test_in_memory_returns_copies():
    backend = InMemoryStateBackend()
    backend.set_state(messages=[HumanMessage(content="hi")], metadata={"a": 1})

    state = backend.get_state()
    state.messages.append(AIMessage(content="sneaky"))
    state.metadata["a"] = 2

    fresh = backend.get_state()
    assert len(fresh.messages) == 1
    assert fresh.metadata == {"a": 1}


def test_in_memory_partial_update_keeps_other_fields():
    backend = InMemoryStateBackend(AgentState(summary="old", todos=[1]))
    backend.set_state(summary="new")
    state = backend.get_state()
    assert state.summary == "new"
    assert state.todos == [1]


def test_in_memory_rejects_unknown_fields():
    with pytest.raises(ValueError):
        InMemoryStateBackend().set_state(nope=1)


# ── SQLiteStateBackend ──────────────────────────────────────


def test_sqlite_backend_creates_session_on_first_access(store):
    backend = SQLiteStateBackend(store, "fresh")
    assert backend.get_state().messages == []
    assert store.get_session("fresh") is not None


def test_sqlite_backend_appends_extensions(store):
    backend = SQLiteStateBackend(store, "s1")
    backend.set_state(messages=[HumanMessage(content="a")])
    backend.set_state(messages=[HumanMessage(content="a"), AIMessage(content="b")])

    assert store.count_messages("s1") == 2
    assert [m.content for m in backend.reload().messages] == ["a", "b"]


def test_sqlite_backend_replaces_on_divergence(store):
    backend = SQLiteStateBackend(store, "s1")
    backend.set_state(messages=[HumanMessage(content="a"), AIMessage(content="b")])
    backend.set_state(messages=[HumanMessage(content="z")])
    assert [m.content for m in store.get_messages("s1")] == ["z"]


def test_sqlite_backend_persists_across_instances(store):
    backend = SQLiteStateBackend(store, "s1")
    backend.set_state(
        messages=[HumanMessage(content="hello")],
        summary="greeting",
        metadata={"lang": "en"},
        tasks=[{"id": 1}],
    )

    other = SQLiteStateBackend(store, "s1").get_state()
    assert other.summary == "greeting"
    assert other.metadata == {"lang": "en"}
    assert other.tasks == [{"id": 1}]
    assert other.messages[0].content == "hello"
