"""补全端点的线上（wire）数据模型。

本模块定义了 StreamClient 与补全端点之间交换的标准数据结构：

- ChatMessage: 发送给端点的一条 {role, content}。
- ChatRequest: 一次完整的补全请求（整段历史 + 模型参数）。
- ChatUsage: 端点在 done 帧中返回的 token 统计。
- StreamFrame: 响应流中解析出的单个帧。

这些结构只在协议层使用；会话内的持久形态见 conversation.py。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


# 会话消息角色（端点只接受 user / assistant）
Role = Literal["user", "assistant"]

# 帧类型；未知类型原样保留在 StreamFrame.kind 中
FRAME_CONTENT = "content"
FRAME_DONE = "done"
FRAME_ERROR = "error"


@dataclass
class ChatMessage:
    """请求中的一条消息，由 Message 投影而来。"""

    role: Role
    content: str


@dataclass
class ChatRequest:
    """一次完整的流式补全请求。

    协议是无状态的：每次都携带整段历史，由服务端负责追加与持久化。
    """

    model: str
    messages: List[ChatMessage]
    conversation_id: str
    stream: bool = True
    max_tokens: int = 4000
    temperature: float = 0.7

    def to_payload(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in self.messages],
            "conversation_id": self.conversation_id,
            "stream": self.stream,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }


@dataclass
class ChatUsage:
    """端点返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_payload(cls, raw: Any) -> Optional["ChatUsage"]:
        if not isinstance(raw, dict) or not raw:
            return None
        return cls(
            prompt_tokens=int(raw.get("prompt_tokens") or 0),
            completion_tokens=int(raw.get("completion_tokens") or 0),
            total_tokens=int(raw.get("total_tokens") or 0),
        )


@dataclass
class StreamFrame:
    """响应流中的单个帧。

    - kind: 帧类型，content / done / error 或其他（前向兼容，未知类型会被忽略）。
    - content: content 帧的增量文本，或 done 帧的最终全文。
    - usage: done 帧携带的 token 统计。
    - message_ids: done 帧中服务端回传的消息 ID（可选）。
    - raw: 原始 JSON，便于日志与错误分类。
    """

    kind: str
    content: Optional[str] = None
    usage: Optional[ChatUsage] = None
    message_ids: Dict[str, str] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "StreamFrame":
        if data.get("error") and data.get("kind", data.get("type")) not in (FRAME_CONTENT, FRAME_DONE):
            kind = FRAME_ERROR
        else:
            kind = str(data.get("kind") or data.get("type") or "")
        content = data.get("content")
        message_ids = data.get("messageIds") or data.get("message_ids") or {}
        return cls(
            kind=kind,
            content=content if isinstance(content, str) else None,
            usage=ChatUsage.from_payload(data.get("usage")),
            message_ids=dict(message_ids) if isinstance(message_ids, dict) else {},
            raw=data,
        )
