"""流式补全客户端的抽象接口。

上层 ConversationStore 不直接依赖 HTTP 细节，而是依赖此协议：

- CancellationToken: 协作式取消原语（发出信号 + 观察），与任何平台的 abort 机制无关。
- StreamCallbacks: onToken / onComplete / onError 三个回调。
- CompletionStreamer: 执行一次流式交换，返回 StreamSummary。

这样测试与其他传输实现（例如 WebSocket）都可以在不改 Store 代码的前提下替换。
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from chat_core.domain.conversation import Message
from chat_core.domain.errors import StructuredError
from chat_core.domain.models import ChatUsage


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.ERRORED, StreamState.CANCELLED)


class CancellationToken:
    """协作式取消令牌。

    cancel() 同步置位，可以在回调内或其他线程调用；
    观察方通过 cancelled 轮询，或用 add_callback 注册一次性通知。
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """注册取消通知；若已取消则立即调用。"""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()


@dataclass
class StreamCallbacks:
    on_token: Callable[[str], None]
    on_complete: Callable[[str, Optional[ChatUsage]], None]
    on_error: Callable[[StructuredError], None]


@dataclass
class StreamSummary:
    """一次流式交换的结果摘要。

    - state: 终止状态。
    - content: 交给 on_complete 的最终内容（未完成时为已累积内容）。
    - usage: done 帧中的 token 统计（隐式完成时为 None）。
    - content_diverged: done 帧内容与增量拼接结果不一致。
    - message_ids: 服务端回传的消息 ID。
    - frames_seen: 成功解析的帧数量。
    - error: 以 ERRORED 结束时的结构化错误。
    """

    state: StreamState
    content: str = ""
    usage: Optional[ChatUsage] = None
    content_diverged: bool = False
    message_ids: Dict[str, str] = field(default_factory=dict)
    frames_seen: int = 0
    error: Optional[StructuredError] = None


class CompletionStreamer(Protocol):
    name: str

    def open(
        self,
        history: Sequence[Message],
        model_id: str,
        callbacks: StreamCallbacks,
        cancel_token: CancellationToken,
        conversation_id: Optional[str] = None,
    ) -> StreamSummary:
        ...
