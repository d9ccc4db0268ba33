"""流式补全客户端。

本模块负责与补全端点完成一次交换：

1. 校验历史（非空且最后一条为 user），违例时本地直接抛 ValidationError，不发请求。
2. 把整段历史投影为 {role, content} 列表，连同模型参数 POST 到端点（协议无状态）。
3. 按行读取响应帧：content 增量逐条转发给 on_token；done 触发 on_complete；
   error 经 ErrorClassifier 分类后触发 on_error；未知帧记录日志后忽略。
4. 没有显式 done 就结束（[DONE] 哨兵或 body 结束）时，用已累积内容隐式完成，usage 为空。
5. 响应不是帧流（例如一次性 JSON body）时，整个 body 视为一个 done 帧。

取消：令牌置位后客户端立即进入 CANCELLED，不再触发任何回调，已经送出的 token 保持不变。
"""

import json
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.conversation import Message
from chat_core.domain.errors import StructuredError
from chat_core.domain.exceptions import AuthenticationError, NetworkError, ValidationError
from chat_core.domain.models import (
    FRAME_CONTENT,
    FRAME_DONE,
    FRAME_ERROR,
    ChatMessage,
    ChatRequest,
    ChatUsage,
    StreamFrame,
)
from chat_core.domain.usage import AuthProvider
from chat_core.errors.classifier import NETWORK_MESSAGE, ErrorClassifier
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import CancellationToken, StreamCallbacks, StreamState, StreamSummary
from chat_core.providers.registry import get_model_config


# 视为“逐帧”响应的 content-type；其他类型整体按单个 done 帧处理
_FRAMED_CONTENT_TYPES = ("text/event-stream", "application/x-ndjson")
_SENTINEL = "[DONE]"


class _StreamRun:
    """单次交换的可变状态（累积内容、终止状态与回调守卫）。"""

    def __init__(
        self,
        callbacks: StreamCallbacks,
        cancel_token: CancellationToken,
        on_state: Callable[["_StreamRun", StreamState], None],
    ):
        self.callbacks = callbacks
        self.token = cancel_token
        self.pieces: List[str] = []
        self.frames_seen = 0
        self.malformed = 0
        self.state = StreamState.IDLE
        self._on_state = on_state

    @property
    def accumulated(self) -> str:
        return "".join(self.pieces)

    def transition(self, state: StreamState) -> None:
        self.state = state
        self._on_state(self, state)

    def deliver(self, delta: str) -> None:
        if self.token.cancelled:
            return
        self.pieces.append(delta)
        self.callbacks.on_token(delta)

    def complete(
        self,
        content: str,
        usage: Optional[ChatUsage],
        diverged: bool = False,
        message_ids: Optional[Dict[str, str]] = None,
    ) -> StreamSummary:
        if self.token.cancelled:
            return self.cancel()
        self.transition(StreamState.COMPLETED)
        self.callbacks.on_complete(content, usage)
        return StreamSummary(
            state=StreamState.COMPLETED,
            content=content,
            usage=usage,
            content_diverged=diverged,
            message_ids=dict(message_ids or {}),
            frames_seen=self.frames_seen,
        )

    def fail(self, make_error: Callable[[], StructuredError]) -> StreamSummary:
        if self.token.cancelled:
            return self.cancel()
        error = make_error()
        self.transition(StreamState.ERRORED)
        self.callbacks.on_error(error)
        return StreamSummary(
            state=StreamState.ERRORED,
            content=self.accumulated,
            frames_seen=self.frames_seen,
            error=error,
        )

    def cancel(self) -> StreamSummary:
        self.transition(StreamState.CANCELLED)
        return StreamSummary(
            state=StreamState.CANCELLED,
            content=self.accumulated,
            frames_seen=self.frames_seen,
        )


class StreamClient:
    """补全端点的流式客户端实现。

    - name: 客户端名称（供日志使用）。
    - state: 最近一次交换所处的状态。
    - open: 执行一次流式交换，同步读取直到终止状态。
    """

    name = "completion"

    def __init__(self, auth: AuthProvider, classifier: Optional[ErrorClassifier] = None, cfg=settings):
        self._auth = auth
        self._classifier = classifier or ErrorClassifier()
        self._settings = cfg
        self._state = StreamState.IDLE
        self._active: Optional[_StreamRun] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> StreamState:
        return self._state

    def open(
        self,
        history: Sequence[Message],
        model_id: str,
        callbacks: StreamCallbacks,
        cancel_token: CancellationToken,
        conversation_id: Optional[str] = None,
    ) -> StreamSummary:
        """执行一次流式交换。

        Args:
            history: 完整对话历史，最后一条必须是 user。
            model_id: 目标模型 ID。
            callbacks: on_token / on_complete / on_error。
            cancel_token: 取消令牌；置位后不再触发任何回调。
            conversation_id: 会话 ID，默认取最后一条消息的 conversation_id。

        Returns:
            StreamSummary，state 为 COMPLETED / ERRORED / CANCELLED 之一。

        Raises:
            ValidationError: 历史为空、最后一条不是 user，或本客户端已有未结束且未取消的流。
        """

        self._validate_history(history)
        run = _StreamRun(callbacks, cancel_token, self._set_state)
        with self._lock:
            active = self._active
            if active is not None and not active.token.cancelled and not active.state.is_terminal:
                raise ValidationError(code="STREAM_ALREADY_OPEN", message="A stream is already open on this client")
            # 已取消的旧交换可能仍阻塞在读循环里，此后它的状态变化不再写回客户端
            self._active = run
            self._state = StreamState.IDLE

        req = self._build_request(history, model_id, conversation_id)
        log_ctx: Dict[str, Any] = {
            "conversation_id": req.conversation_id,
            "model": req.model,
        }
        cancel_token.add_callback(lambda: self._on_cancel_signal(run, log_ctx))

        try:
            summary = self._exchange(req, run, log_ctx)
        finally:
            if not run.state.is_terminal:
                # 回调自身抛出异常时，状态机也要落到终止态
                run.transition(StreamState.ERRORED)
        self._log(
            "Stream finished",
            log_ctx,
            state=summary.state.value,
            frames=summary.frames_seen,
            chars=len(summary.content),
            diverged=summary.content_diverged,
        )
        return summary

    # ---- 交换主流程 ----

    def _exchange(self, req: ChatRequest, run: _StreamRun, log_ctx: Dict[str, Any]) -> StreamSummary:
        if run.token.cancelled:
            return run.cancel()

        bearer = self._auth.get_bearer_token()
        if not bearer:
            return run.fail(
                lambda: self._classifier.from_exception(
                    AuthenticationError(code="AUTHENTICATION_REQUIRED", message="Authentication required. Please sign in."),
                    model_id=req.model,
                )
            )

        run.transition(StreamState.CONNECTING)
        self._log("Opening stream", log_ctx, message_count=len(req.messages), max_tokens=req.max_tokens)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    self._settings.completion_url,
                    json=req.to_payload(),
                    headers=self._headers(bearer),
                ) as resp:
                    if run.token.cancelled:
                        return run.cancel()
                    if resp.status_code >= 400:
                        return self._handle_error_response(resp, req, run)
                    content_type = resp.headers.get("content-type", "")
                    if not any(t in content_type for t in _FRAMED_CONTENT_TYPES):
                        self._log("Response is not frame-delimited", log_ctx, content_type=content_type)
                        return self._handle_single_body(resp, req, run)
                    run.transition(StreamState.STREAMING)
                    return self._read_frames(resp, req, run, log_ctx)
        except (httpx.HTTPError, httpx.StreamError) as e:
            if run.token.cancelled:
                return run.cancel()
            logger.error(
                f"Stream transport failed: {e}",
                extra={"extra": dict(log_ctx, error=type(e).__name__)},
            )
            return run.fail(
                lambda: self._classifier.from_exception(
                    NetworkError(code="NETWORK_ERROR", message=NETWORK_MESSAGE, detail=str(e)),
                    model_id=req.model,
                )
            )

    def _read_frames(
        self,
        resp: httpx.Response,
        req: ChatRequest,
        run: _StreamRun,
        log_ctx: Dict[str, Any],
    ) -> StreamSummary:
        for line in resp.iter_lines():
            if run.token.cancelled:
                return run.cancel()
            data_str = line.strip()
            if data_str.startswith("data:"):
                data_str = data_str[5:].strip()
            if not data_str:
                continue
            if data_str == _SENTINEL:
                return self._finish_implicit(req, run, log_ctx)
            try:
                payload = json.loads(data_str)
            except json.JSONDecodeError:
                run.malformed += 1
                self._log("Skipping unparsable frame", log_ctx, preview=data_str[:100])
                continue
            if not isinstance(payload, dict):
                run.malformed += 1
                self._log("Skipping non-object frame", log_ctx, preview=data_str[:100])
                continue

            frame = StreamFrame.from_payload(payload)
            run.frames_seen += 1
            if frame.kind == FRAME_CONTENT:
                if frame.content:
                    run.deliver(frame.content)
            elif frame.kind == FRAME_DONE:
                return self._finish_done(frame, run, log_ctx)
            elif frame.kind == FRAME_ERROR:
                return run.fail(lambda: self._classifier.from_frame(payload, model_id=req.model))
            else:
                logger.warning(
                    "Ignoring unknown frame kind",
                    extra={"extra": dict(log_ctx, kind=frame.kind)},
                )

        if run.token.cancelled:
            return run.cancel()
        return self._finish_implicit(req, run, log_ctx)

    def _finish_done(self, frame: StreamFrame, run: _StreamRun, log_ctx: Dict[str, Any]) -> StreamSummary:
        accumulated = run.accumulated
        final = frame.content or accumulated
        diverged = bool(frame.content) and bool(accumulated) and frame.content != accumulated
        if diverged:
            logger.warning(
                "Final content diverges from streamed deltas",
                extra={"extra": dict(
                    log_ctx,
                    final_chars=len(frame.content or ""),
                    streamed_chars=len(accumulated),
                )},
            )
        return run.complete(final, frame.usage, diverged=diverged, message_ids=frame.message_ids)

    def _finish_implicit(self, req: ChatRequest, run: _StreamRun, log_ctx: Dict[str, Any]) -> StreamSummary:
        if run.malformed and not run.pieces:
            return run.fail(
                lambda: self._classifier.from_frame(
                    {"type": "STREAM_ERROR", "message": "Error reading response stream. Please try again."},
                    model_id=req.model,
                )
            )
        self._log("Stream ended without explicit completion", log_ctx, chars=len(run.accumulated))
        return run.complete(run.accumulated, None)

    def _handle_error_response(self, resp: httpx.Response, req: ChatRequest, run: _StreamRun) -> StreamSummary:
        resp.read()
        try:
            body: Any = resp.json()
        except ValueError:
            body = resp.text or None
        return run.fail(lambda: self._classifier.from_response(resp.status_code, body, model_id=req.model))

    def _handle_single_body(self, resp: httpx.Response, req: ChatRequest, run: _StreamRun) -> StreamSummary:
        resp.read()
        try:
            data: Any = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            return run.complete(resp.text, None)
        if data.get("error"):
            return run.fail(lambda: self._classifier.from_frame(data, model_id=req.model))
        run.frames_seen += 1
        frame = StreamFrame.from_payload(dict(data, kind=FRAME_DONE))
        content = frame.content if frame.content is not None else _choice_content(data)
        return run.complete(content, frame.usage, message_ids=frame.message_ids)

    # ---- 辅助方法 ----

    def _set_state(self, run: _StreamRun, state: StreamState) -> None:
        with self._lock:
            if self._active is run:
                self._state = state

    def _on_cancel_signal(self, run: _StreamRun, log_ctx: Dict[str, Any]) -> None:
        """令牌置位时立即把客户端切到 CANCELLED（在取消方线程上执行）。

        读线程可能仍阻塞在下一帧上；它醒来后看到令牌已置位，直接退出并释放连接。
        """

        with self._lock:
            if self._active is run and not run.state.is_terminal:
                self._state = StreamState.CANCELLED
        self._log("Cancellation requested", log_ctx, state=run.state.value)

    def _build_request(self, history: Sequence[Message], model_id: str, conversation_id: Optional[str]) -> ChatRequest:
        model_cfg = get_model_config(model_id)
        max_tokens = self._settings.max_request_tokens
        if model_cfg is not None:
            max_tokens = min(model_cfg.max_tokens, max_tokens)
        return ChatRequest(
            model=model_id,
            messages=[ChatMessage(role=m.role, content=m.content) for m in history],
            conversation_id=conversation_id or history[-1].conversation_id,
            stream=True,
            max_tokens=max_tokens,
            temperature=self._settings.temperature,
        )

    def _headers(self, bearer: str) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {bearer}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        anon_key = getattr(self._settings, "anon_api_key", None)
        if anon_key:
            headers["apikey"] = anon_key
        return headers

    @staticmethod
    def _validate_history(history: Sequence[Message]) -> None:
        if not history:
            raise ValidationError(code="EMPTY_HISTORY", message="No conversation history provided")
        if history[-1].role != "user":
            raise ValidationError(code="INVALID_HISTORY", message="Last message must be from user")

    @staticmethod
    def _log(message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.info(message, extra={"extra": payload})


def _choice_content(data: Dict[str, Any]) -> str:
    """兼容 OpenAI 风格的一次性响应：choices[0].message.content。"""

    choices = data.get("choices") or []
    if choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        content = message.get("content")
        if isinstance(content, str):
            return content
    return ""
