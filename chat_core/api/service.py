"""对外 API 服务模块。

提供简化的函数接口供上层应用调用：组装 ConversationStore，
并把会话状态投影为可序列化的 dict。
"""

from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.conversations.store import ConversationStore
from chat_core.domain.conversation import Conversation, Message, PersistenceService
from chat_core.domain.errors import StructuredError
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.usage import AuthProvider, TierService
from chat_core.errors.classifier import ErrorClassifier
from chat_core.infrastructure.events.bus import NotificationBus
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonPersistenceService
from chat_core.providers.completion_client import StreamClient
from chat_core.usage.gate import UsageGate
from chat_core.usage.monitor import UsageMonitor


def build_conversation_store(
    auth: AuthProvider,
    tier_service: TierService,
    *,
    persistence: Optional[PersistenceService] = None,
    bus: Optional[NotificationBus] = None,
    cfg=settings,
    start_monitor: bool = False,
) -> ConversationStore:
    """按默认实现组装一个 ConversationStore。

    Args:
        auth: 鉴权协作者。
        tier_service: 真正的档位 / 用量来源，外面会包一层 UsageMonitor 缓存。
        persistence: 元数据持久化；默认写到 settings.storage_root 下。
        bus: 通知总线；UI 协作者需要订阅时传入同一个实例。
        cfg: 配置对象。
        start_monitor: 是否立即启动用量定时刷新。
    """

    bus = bus or NotificationBus()
    classifier = ErrorClassifier(bus)
    monitor = UsageMonitor(tier_service, bus=bus, cfg=cfg)
    if start_monitor:
        monitor.start()
    store = ConversationStore(
        stream_client=StreamClient(auth, classifier=classifier, cfg=cfg),
        usage_gate=UsageGate(cfg),
        tier_service=monitor,
        auth=auth,
        persistence=persistence or JsonPersistenceService(root=cfg.storage_root),
        bus=bus,
        classifier=classifier,
        cfg=cfg,
    )
    logger.info(
        "Conversation store ready",
        extra={"extra": {"completion_url": cfg.completion_url, "monitor_running": monitor.running}},
    )
    return store


def shutdown(store: ConversationStore) -> None:
    """取消进行中的流并停止用量刷新。"""

    store.cancel()
    tiers = store.tier_service
    if isinstance(tiers, UsageMonitor):
        tiers.close()


def send_chat(store: ConversationStore, text: str, model_id: Optional[str] = None) -> Dict[str, Any]:
    """发送一条消息并返回结果摘要。

    Returns:
        包含 conversation_id、终止状态、助手消息与错误信息的字典；
        未发出请求时 state 为 None。
    """

    state = store.send_message(text, model_id=model_id)
    conv = store.active_conversation
    last = conv.last_message if conv is not None else None
    return {
        "conversation_id": conv.id if conv is not None else None,
        "state": state.value if state is not None else None,
        "assistant_message": message_to_dict(last) if last is not None and last.role == "assistant" else None,
        "error": error_to_dict(store.error),
    }


def conversation_to_dict(conv: Conversation, include_messages: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": conv.id,
        "title": conv.title,
        "created_at": conv.created_at.isoformat(),
        "updated_at": conv.updated_at.isoformat(),
        "total_tokens": conv.total_tokens,
        "message_count": len(conv.messages),
    }
    if include_messages:
        data["messages"] = [message_to_dict(m) for m in conv.messages]
    return data


def message_to_dict(message: Message) -> Dict[str, Any]:
    usage = None
    if message.usage is not None:
        usage = {
            "input_tokens": message.usage.input_tokens,
            "output_tokens": message.usage.output_tokens,
            "total_tokens": message.usage.total_tokens,
        }
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "model_used": message.model_used,
        "usage": usage,
        "created_at": message.created_at.isoformat(),
    }


def error_to_dict(error: Optional[StructuredError]) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    return {
        "kind": error.kind.value,
        "message": error.message,
        "remediation_tier": error.remediation_tier,
        "current_tier": error.current_tier,
        "status_code": error.status_code,
        "dismissible": error.kind.is_dismissible,
    }


def list_conversations(store: ConversationStore) -> List[Dict[str, Any]]:
    """列出所有会话（最近活动的在前）。"""

    return [conversation_to_dict(c) for c in store.conversations]


def get_conversation_messages(store: ConversationStore, conversation_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息。

    Raises:
        BusinessError: 会话不存在（CONVERSATION_NOT_FOUND）。
    """

    conv = store.state.get(conversation_id)
    if conv is None:
        raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
    return [message_to_dict(m) for m in conv.messages]
