from datetime import datetime, timezone

import pytest

from chat_core.conversations.reducer import (
    ConversationCreated,
    ConversationDeleted,
    ConversationRenamed,
    ConversationSelected,
    StoreState,
    StreamCancelled,
    StreamCompleted,
    StreamFailed,
    StreamStarted,
    TokenReceived,
    UserMessageAppended,
    reduce,
)
from chat_core.domain.conversation import IDLE_STREAMING, Conversation, Message


T0 = datetime(2025, 6, 20, 10, 0, tzinfo=timezone.utc)
T1 = datetime(2025, 6, 20, 10, 5, tzinfo=timezone.utc)


def conv(cid="c1"):
    return Conversation(id=cid, title="New Chat", created_at=T0, updated_at=T0)


def msg(mid, role="user", cid="c1", content="hi"):
    return Message(id=mid, conversation_id=cid, role=role, content=content, created_at=T0)


def streaming_state():
    state = reduce(StoreState(), ConversationCreated(conv()))
    state = reduce(state, UserMessageAppended(message=msg("u1"), at=T1, title="hi"))
    return reduce(state, StreamStarted(conversation_id="c1", stream_id="s1"))


def test_created_becomes_active_and_newest_first():
    state = reduce(StoreState(), ConversationCreated(conv("a")))
    state = reduce(state, ConversationCreated(conv("b")))
    assert [c.id for c in state.conversations] == ["b", "a"]
    assert state.active_id == "b"


def test_user_message_sets_title_and_pending():
    state = reduce(StoreState(), ConversationCreated(conv()))
    new_state = reduce(state, UserMessageAppended(message=msg("u1"), at=T1, title="hi"))
    assert new_state.active.title == "hi"
    assert new_state.active.updated_at == T1
    assert new_state.pending_message_id == "u1"
    # 原状态不被修改
    assert state.active.messages == ()


def test_tokens_only_touch_accumulator():
    state = streaming_state()
    for delta in ("Hel", "lo", " world"):
        state = reduce(state, TokenReceived(stream_id="s1", delta=delta))
    assert state.streaming.accumulator == "Hello world"
    assert [m.id for m in state.active.messages] == ["u1"]


def test_completed_appends_and_clears_streaming():
    state = reduce(streaming_state(), TokenReceived(stream_id="s1", delta="x"))
    state = reduce(state, StreamCompleted(stream_id="s1", message=msg("a1", role="assistant", content="x"), at=T1))
    assert [m.id for m in state.active.messages] == ["u1", "a1"]
    assert state.streaming == IDLE_STREAMING
    assert state.pending_message_id is None


def test_failed_removes_only_pending_message():
    state = reduce(StoreState(), ConversationCreated(conv()))
    state = reduce(state, UserMessageAppended(message=msg("u0"), at=T0))
    state = reduce(state, StreamStarted(conversation_id="c1", stream_id="s0"))
    state = reduce(state, StreamCompleted(stream_id="s0", message=msg("a0", role="assistant"), at=T0))
    state = reduce(state, UserMessageAppended(message=msg("u1"), at=T1))
    state = reduce(state, StreamStarted(conversation_id="c1", stream_id="s1"))

    state = reduce(state, StreamFailed(stream_id="s1", at=T1))
    assert [m.id for m in state.active.messages] == ["u0", "a0"]
    assert state.streaming == IDLE_STREAMING


def test_cancelled_keeps_user_message():
    state = reduce(streaming_state(), TokenReceived(stream_id="s1", delta="partial"))
    state = reduce(state, StreamCancelled(stream_id="s1"))
    assert [m.id for m in state.active.messages] == ["u1"]
    assert state.streaming == IDLE_STREAMING


def test_stale_stream_events_are_ignored():
    state = streaming_state()
    assert reduce(state, TokenReceived(stream_id="old", delta="x")) is state
    assert reduce(state, StreamFailed(stream_id="old", at=T1)) is state

    cancelled = reduce(state, StreamCancelled(stream_id="s1"))
    late = reduce(cancelled, TokenReceived(stream_id="s1", delta="late"))
    assert late is cancelled


def test_rename_select_delete():
    state = reduce(StoreState(), ConversationCreated(conv("a")))
    state = reduce(state, ConversationCreated(conv("b")))
    state = reduce(state, ConversationRenamed(conversation_id="a", title="Renamed", at=T1))
    assert state.get("a").title == "Renamed"

    state = reduce(state, ConversationSelected(conversation_id="a"))
    assert state.active_id == "a"
    assert reduce(state, ConversationSelected(conversation_id="missing")) is state

    state = reduce(state, ConversationDeleted(conversation_id="a"))
    assert state.active_id == "b"
    state = reduce(state, ConversationDeleted(conversation_id="b"))
    assert state.active_id is None
    assert state.conversations == ()


def test_delete_streaming_conversation_clears_streaming():
    state = reduce(streaming_state(), ConversationDeleted(conversation_id="c1"))
    assert state.streaming == IDLE_STREAMING


def test_unknown_event_type_raises():
    with pytest.raises(TypeError):
        reduce(StoreState(), object())
