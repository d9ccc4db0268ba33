"""会话状态的纯 reducer。

ConversationStore 的每一次状态变化都表示为一个事件，由 reduce(state, event)
计算出新的不可变 StoreState。reducer 不做 I/O、不读时钟、不生成 ID，
这些都由 Store 在构造事件时提供。

携带过期 stream_id 的流事件（例如取消之后迟到的 token）一律忽略。
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple, Type

from chat_core.domain.conversation import IDLE_STREAMING, Conversation, Message, StreamingState


@dataclass(frozen=True)
class StoreState:
    """Store 的完整快照。

    - conversations: 会话列表，最近活动的在前。
    - active_id: 当前选中的会话。
    - streaming: 正在进行的流式回答（未在发送时为 IDLE_STREAMING）。
    - pending_message_id: 触发当前流的乐观 user 消息 ID，失败时据此回滚。
    """

    conversations: Tuple[Conversation, ...] = ()
    active_id: Optional[str] = None
    streaming: StreamingState = IDLE_STREAMING
    pending_message_id: Optional[str] = None

    def get(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        for conv in self.conversations:
            if conv.id == conversation_id:
                return conv
        return None

    @property
    def active(self) -> Optional[Conversation]:
        return self.get(self.active_id)


# ---- 事件 ----

@dataclass(frozen=True)
class ConversationCreated:
    conversation: Conversation


@dataclass(frozen=True)
class ConversationSelected:
    conversation_id: str


@dataclass(frozen=True)
class ConversationRenamed:
    conversation_id: str
    title: str
    at: datetime


@dataclass(frozen=True)
class ConversationDeleted:
    conversation_id: str


@dataclass(frozen=True)
class UserMessageAppended:
    message: Message
    at: datetime
    title: Optional[str] = None


@dataclass(frozen=True)
class StreamStarted:
    conversation_id: str
    stream_id: str


@dataclass(frozen=True)
class TokenReceived:
    stream_id: str
    delta: str


@dataclass(frozen=True)
class StreamCompleted:
    stream_id: str
    message: Message
    at: datetime


@dataclass(frozen=True)
class StreamFailed:
    stream_id: str
    at: datetime


@dataclass(frozen=True)
class StreamCancelled:
    stream_id: str


# ---- 处理函数 ----

def _replace_conv(state: StoreState, conv: Conversation, to_front: bool = False) -> Tuple[Conversation, ...]:
    others = tuple(c for c in state.conversations if c.id != conv.id)
    if to_front:
        return (conv,) + others
    return tuple(conv if c.id == conv.id else c for c in state.conversations)


def _on_created(state: StoreState, event: ConversationCreated) -> StoreState:
    conversations = (event.conversation,) + tuple(c for c in state.conversations if c.id != event.conversation.id)
    return replace(state, conversations=conversations, active_id=event.conversation.id)


def _on_selected(state: StoreState, event: ConversationSelected) -> StoreState:
    if state.get(event.conversation_id) is None:
        return state
    return replace(state, active_id=event.conversation_id)


def _on_renamed(state: StoreState, event: ConversationRenamed) -> StoreState:
    conv = state.get(event.conversation_id)
    if conv is None:
        return state
    renamed = replace(conv, title=event.title, updated_at=event.at)
    return replace(state, conversations=_replace_conv(state, renamed))


def _on_deleted(state: StoreState, event: ConversationDeleted) -> StoreState:
    if state.get(event.conversation_id) is None:
        return state
    remaining = tuple(c for c in state.conversations if c.id != event.conversation_id)
    active_id = state.active_id
    if active_id == event.conversation_id:
        active_id = remaining[0].id if remaining else None
    new_state = replace(state, conversations=remaining, active_id=active_id)
    if state.streaming.conversation_id == event.conversation_id:
        new_state = replace(new_state, streaming=IDLE_STREAMING, pending_message_id=None)
    return new_state


def _on_user_message(state: StoreState, event: UserMessageAppended) -> StoreState:
    conv = state.get(event.message.conversation_id)
    if conv is None:
        return state
    updated = conv.with_messages(conv.messages + (event.message,), event.at)
    if event.title is not None:
        updated = replace(updated, title=event.title)
    return replace(
        state,
        conversations=_replace_conv(state, updated, to_front=True),
        pending_message_id=event.message.id,
    )


def _on_stream_started(state: StoreState, event: StreamStarted) -> StoreState:
    return replace(
        state,
        streaming=StreamingState(
            is_streaming=True,
            accumulator="",
            stream_id=event.stream_id,
            conversation_id=event.conversation_id,
        ),
    )


def _on_token(state: StoreState, event: TokenReceived) -> StoreState:
    streaming = replace(state.streaming, accumulator=state.streaming.accumulator + event.delta)
    return replace(state, streaming=streaming)


def _on_completed(state: StoreState, event: StreamCompleted) -> StoreState:
    conv = state.get(event.message.conversation_id)
    new_state = replace(state, streaming=IDLE_STREAMING, pending_message_id=None)
    if conv is None:
        return new_state
    updated = conv.with_messages(conv.messages + (event.message,), event.at)
    return replace(new_state, conversations=_replace_conv(state, updated, to_front=True))


def _on_failed(state: StoreState, event: StreamFailed) -> StoreState:
    new_state = replace(state, streaming=IDLE_STREAMING, pending_message_id=None)
    conv = state.get(state.streaming.conversation_id)
    if conv is None or state.pending_message_id is None:
        return new_state
    # 只移除触发本次发送的那条乐观消息
    kept = tuple(m for m in conv.messages if m.id != state.pending_message_id)
    if len(kept) == len(conv.messages):
        return new_state
    updated = conv.with_messages(kept, event.at)
    return replace(new_state, conversations=_replace_conv(state, updated))


def _on_cancelled(state: StoreState, event: StreamCancelled) -> StoreState:
    return replace(state, streaming=IDLE_STREAMING, pending_message_id=None)


_STREAM_EVENTS = (TokenReceived, StreamCompleted, StreamFailed, StreamCancelled)

_HANDLERS: Dict[Type, Callable[[StoreState, object], StoreState]] = {
    ConversationCreated: _on_created,
    ConversationSelected: _on_selected,
    ConversationRenamed: _on_renamed,
    ConversationDeleted: _on_deleted,
    UserMessageAppended: _on_user_message,
    StreamStarted: _on_stream_started,
    TokenReceived: _on_token,
    StreamCompleted: _on_completed,
    StreamFailed: _on_failed,
    StreamCancelled: _on_cancelled,
}


def is_stale(state: StoreState, event: object) -> bool:
    if not isinstance(event, _STREAM_EVENTS):
        return False
    return not state.streaming.is_streaming or state.streaming.stream_id != event.stream_id


def reduce(state: StoreState, event: object) -> StoreState:
    """对 state 应用一个事件，返回新的 StoreState（不修改入参）。

    Raises:
        TypeError: 事件类型未注册。
    """

    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unsupported store event: {type(event).__name__}")
    if is_stale(state, event):
        return state
    return handler(state, event)
