from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Protocol, Tuple

from .models import ChatUsage, Role


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int
    total_tokens: int

    @classmethod
    def from_chat_usage(cls, usage: Optional[ChatUsage]) -> Optional["TokenUsage"]:
        if usage is None:
            return None
        return cls(
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime
    model_used: Optional[str] = None
    usage: Optional[TokenUsage] = None


@dataclass(frozen=True)
class Conversation:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: Tuple[Message, ...] = field(default_factory=tuple)

    @property
    def total_tokens(self) -> int:
        return sum(m.usage.total_tokens for m in self.messages if m.usage)

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def with_messages(self, messages: Tuple[Message, ...], updated_at: datetime) -> "Conversation":
        return replace(self, messages=messages, updated_at=updated_at)


@dataclass(frozen=True)
class StreamingState:
    """某个会话上正在进行的流式回答（瞬态，不进入 messages）。"""

    is_streaming: bool = False
    accumulator: str = ""
    stream_id: Optional[str] = None
    conversation_id: Optional[str] = None


IDLE_STREAMING = StreamingState()


class PersistenceService(Protocol):
    """会话元数据的落盘协作者。只接收已物化的会话，不含乐观状态。"""

    def save_conversation_metadata(self, conversation: Conversation) -> None:
        ...

    def delete_conversation_metadata(self, conversation_id: str) -> None:
        """删除落盘记录；从未保存过时抛 CONVERSATION_NOT_FOUND。"""
        ...
