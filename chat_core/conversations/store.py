"""会话状态的唯一所有者。

ConversationStore 把一次发送串起来：

    准入检查 (UsageGate) → 乐观追加 user 消息 → StreamClient.open
        → on_token: 只更新 StreamingState.accumulator
        → on_complete: 物化 assistant 消息，持久化元数据，请求刷新用量
        → on_error: 回滚触发本次发送的那条 user 消息，保存错误供展示

所有状态变化都经过 reducer.reduce 完成；Store 只负责构造事件（时钟、ID）
以及与协作者（鉴权、档位、持久化、通知）交互。
重命名与删除会同步到持久化；发送进行中的会话不落盘，等 on_complete 一并保存。
"""

import threading
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple
from uuid import uuid4

from chat_core.config.settings import settings
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
from chat_core.domain.conversation import Conversation, Message, PersistenceService, StreamingState, TokenUsage
from chat_core.domain.errors import ErrorKind, StructuredError
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.domain.models import ChatUsage
from chat_core.domain.usage import AuthProvider, TierService
from chat_core.errors.classifier import ErrorClassifier, allowed_models_tuple
from chat_core.infrastructure.events.bus import USAGE_REFRESH_REQUESTED, USAGE_WARNING, NotificationBus
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import CancellationToken, CompletionStreamer, StreamCallbacks, StreamState
from chat_core.usage.gate import ComposeState, UsageGate


DEFAULT_TITLE = "New Chat"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class ConversationStore:
    """会话集合与当前流式状态的持有者。

    Args:
        stream_client: 流式补全客户端（CompletionStreamer）。
        usage_gate: 发送前准入检查。
        tier_service: 档位与用量快照来源。
        auth: 鉴权协作者。
        persistence: 会话元数据持久化（可选）。
        bus: 通知总线；未提供时新建一个。
        classifier: 错误分类器；未提供时基于 bus 新建。
        cfg: 配置对象，默认使用全局 settings。
        clock: 返回当前时刻的函数（测试可注入固定时间）。
        id_factory: 生成消息 / 会话 / 流 ID 的函数。
    """

    def __init__(
        self,
        stream_client: CompletionStreamer,
        usage_gate: UsageGate,
        tier_service: TierService,
        auth: AuthProvider,
        persistence: Optional[PersistenceService] = None,
        bus: Optional[NotificationBus] = None,
        classifier: Optional[ErrorClassifier] = None,
        cfg=settings,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._client = stream_client
        self._gate = usage_gate
        self._tiers = tier_service
        self._auth = auth
        self._persistence = persistence
        self.bus = bus or NotificationBus()
        self._classifier = classifier or ErrorClassifier(self.bus)
        self._settings = cfg
        self._clock = clock or _utcnow
        self._new_id = id_factory or _new_id

        self._lock = threading.RLock()
        self._state = StoreState()
        self._compose = ComposeState()
        self._error: Optional[StructuredError] = None
        self._cancel_token: Optional[CancellationToken] = None

    # ---- 只读视图 ----

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def conversations(self) -> Tuple[Conversation, ...]:
        return self._state.conversations

    @property
    def active_conversation(self) -> Optional[Conversation]:
        return self._state.active

    @property
    def streaming(self) -> StreamingState:
        return self._state.streaming

    @property
    def error(self) -> Optional[StructuredError]:
        return self._error

    @property
    def tier_service(self) -> TierService:
        return self._tiers

    @property
    def confirmation_pending(self) -> bool:
        return self._compose.warned

    # ---- 会话管理 ----

    def new_conversation(self, title: str = DEFAULT_TITLE) -> Conversation:
        now = self._clock()
        conv = Conversation(id=self._new_id(), title=title or DEFAULT_TITLE, created_at=now, updated_at=now)
        self._dispatch(ConversationCreated(conv))
        logger.info("Conversation created", extra={"extra": {"conversation_id": conv.id}})
        return conv

    def select_conversation(self, conversation_id: str) -> Conversation:
        conv = self._require(conversation_id)
        streaming = self._state.streaming
        if streaming.is_streaming and streaming.conversation_id != conversation_id:
            self.cancel()
        self._dispatch(ConversationSelected(conversation_id))
        return conv

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        self._require(conversation_id)
        title = (title or "").strip()
        if not title:
            raise ValidationError(code="INVALID_TITLE", message="Title must not be empty")
        self._dispatch(ConversationRenamed(conversation_id, title, self._clock()))
        conv = self._require(conversation_id)
        streaming = self._state.streaming
        # 发送进行中时会话里还有乐观消息，留给 on_complete 一并落盘
        if conv.messages and not (streaming.is_streaming and streaming.conversation_id == conversation_id):
            self._persist(conv)
        return conv

    def delete_conversation(self, conversation_id: str) -> None:
        self._require(conversation_id)
        if self._state.streaming.conversation_id == conversation_id:
            self.cancel()
        self._dispatch(ConversationDeleted(conversation_id))
        logger.info("Conversation deleted", extra={"extra": {"conversation_id": conversation_id}})
        if self._persistence is None:
            return
        try:
            self._persistence.delete_conversation_metadata(conversation_id)
        except BusinessError as e:
            if e.code != "CONVERSATION_NOT_FOUND":
                self._persistence_failed("Failed to delete conversation metadata", conversation_id, e)
                return
            # 从未完成过一次回答的会话没有落盘记录
            logger.info("No stored metadata to delete", extra={"extra": {"conversation_id": conversation_id}})
        except Exception as e:
            self._persistence_failed("Failed to delete conversation metadata", conversation_id, e)

    def update_draft(self, text: str) -> None:
        self._compose.update_draft(text)

    def dismiss_error(self) -> None:
        self._error = None

    # ---- 发送 ----

    def send_message(self, text: str, model_id: Optional[str] = None) -> Optional[StreamState]:
        """发送一条 user 消息并同步读完回答。

        Returns:
            流的终止状态；未真正发出请求（空文本、未登录、正在流式、
            被准入拦截或等待确认）时返回 None。
        """

        content = (text or "").strip()
        if not content:
            return None
        if not self._auth.is_valid():
            logger.info("Send ignored: session is not valid")
            return None
        if self._state.streaming.is_streaming:
            logger.info("Send ignored: a stream is already active")
            return None

        model = model_id or self._settings.default_model
        conv = self._state.active or self.new_conversation()
        if not self._admit(content, model):
            return None

        now = self._clock()
        message = Message(id=self._new_id(), conversation_id=conv.id, role="user", content=content, created_at=now)
        title = self._title_for(content) if not conv.messages else None
        stream_id = self._new_id()
        token = CancellationToken()
        with self._lock:
            self._error = None
            self._cancel_token = token
            self._dispatch(UserMessageAppended(message=message, at=now, title=title))
            self._dispatch(StreamStarted(conversation_id=conv.id, stream_id=stream_id))
        self._compose.reset()

        history = self._state.get(conv.id).messages
        callbacks = StreamCallbacks(
            on_token=lambda delta: self._on_token(stream_id, delta),
            on_complete=lambda final, usage: self._on_complete(stream_id, conv.id, model, final, usage),
            on_error=lambda error: self._on_error(stream_id, error),
        )
        logger.info(
            "Sending message",
            extra={"extra": {
                "conversation_id": conv.id,
                "stream_id": stream_id,
                "model": model,
                "history": len(history),
            }},
        )
        try:
            summary = self._client.open(history, model, callbacks, token, conversation_id=conv.id)
        except BusinessError as e:
            self._on_error(stream_id, self._classifier.from_exception(e, model_id=model))
            return StreamState.ERRORED
        except Exception:
            logger.exception("Stream client raised", extra={"extra": {"stream_id": stream_id}})
            self._dispatch(StreamFailed(stream_id=stream_id, at=self._clock()))
            raise
        finally:
            with self._lock:
                if self._cancel_token is token:
                    self._cancel_token = None

        if self._state.streaming.stream_id == stream_id:
            # 客户端返回却没有触发终止回调，按取消处理，保留 user 消息
            logger.warning(
                "Stream returned without a terminal callback",
                extra={"extra": {"stream_id": stream_id, "state": summary.state.value}},
            )
            self._dispatch(StreamCancelled(stream_id=stream_id))
        return summary.state

    def cancel(self) -> bool:
        """取消当前流。已收到的 token 被丢弃，user 消息保留。"""

        with self._lock:
            streaming = self._state.streaming
            token = self._cancel_token
            if not streaming.is_streaming:
                return False
            if token is not None:
                token.cancel()
            self._dispatch(StreamCancelled(stream_id=streaming.stream_id))
        logger.info(
            "Stream cancelled",
            extra={"extra": {"stream_id": streaming.stream_id, "conversation_id": streaming.conversation_id}},
        )
        return True

    # ---- 流回调 ----

    def _on_token(self, stream_id: str, delta: str) -> None:
        self._dispatch(TokenReceived(stream_id=stream_id, delta=delta))

    def _on_complete(
        self,
        stream_id: str,
        conversation_id: str,
        model: str,
        content: str,
        usage: Optional[ChatUsage],
    ) -> None:
        if self._state.streaming.stream_id != stream_id:
            return
        now = self._clock()
        message = Message(
            id=self._new_id(),
            conversation_id=conversation_id,
            role="assistant",
            content=content,
            created_at=now,
            model_used=model,
            usage=TokenUsage.from_chat_usage(usage),
        )
        self._dispatch(StreamCompleted(stream_id=stream_id, message=message, at=now))

        conv = self._state.get(conversation_id)
        if conv is not None:
            self._persist(conv, model_id=model)
        self.bus.publish(USAGE_REFRESH_REQUESTED, conversation_id)

    def _on_error(self, stream_id: str, error: StructuredError) -> None:
        if self._state.streaming.stream_id != stream_id:
            return
        self._dispatch(StreamFailed(stream_id=stream_id, at=self._clock()))
        self._error = error
        if error.kind is ErrorKind.AUTHENTICATION_EXPIRED:
            self._auth.invalidate_session()

    # ---- 辅助方法 ----

    def _persist(self, conv: Conversation, model_id: Optional[str] = None) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.save_conversation_metadata(conv)
        except Exception as e:
            self._persistence_failed("Failed to persist conversation metadata", conv.id, e, model_id)

    def _persistence_failed(
        self, message: str, conversation_id: str, exc: Exception, model_id: Optional[str] = None
    ) -> None:
        logger.exception(message, extra={"extra": {"conversation_id": conversation_id}})
        self._error = self._classifier.from_exception(exc, model_id=model_id)

    def _admit(self, content: str, model: str) -> bool:
        tier = self._tiers.get_current_tier()
        usage = self._tiers.get_usage_snapshot()
        decision = self._gate.can_send(
            content,
            model,
            tier,
            usage,
            self._tiers.get_daily_message_snapshot(),
            self._compose.warned,
        )
        if decision.allowed:
            return True
        if decision.requires_confirmation:
            self._compose.mark_warned()
            self.bus.publish(USAGE_WARNING, decision)
            return False
        self._classifier.publish(
            StructuredError(
                kind=decision.reason or ErrorKind.UNKNOWN,
                message=decision.message,
                usage=usage,
                current_tier=tier.name,
                allowed_models=allowed_models_tuple(tier.allowed_models),
                remediation_tier=decision.remediation_tier,
            )
        )
        return False

    def _title_for(self, content: str) -> str:
        limit = self._settings.title_max_chars
        if len(content) <= limit:
            return content
        return content[:limit] + "..."

    def _require(self, conversation_id: str) -> Conversation:
        conv = self._state.get(conversation_id)
        if conv is None:
            raise BusinessError(
                code="CONVERSATION_NOT_FOUND",
                message=f"Conversation not found: {conversation_id}",
                http_status=404,
            )
        return conv

    def _dispatch(self, event: object) -> None:
        with self._lock:
            self._state = reduce(self._state, event)
