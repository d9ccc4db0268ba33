"""错误分类器。

把各种形态的失败（HTTP 状态 + body、流内 error 帧、传输异常）
映射到封闭的 ErrorKind 分类，并生成带升级建议的 StructuredError。

classify_payload / classify_exception 是纯函数；ErrorClassifier 在此之上
多做一件事：把结果发布到注入的 NotificationBus 上，
使弹窗类 UI 协作者无需穿过每个调用点即可响应。
"""

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from chat_core.domain.errors import ErrorKind, StructuredError
from chat_core.domain.exceptions import AuthenticationError, BusinessError, NetworkError
from chat_core.domain.usage import UsageSnapshot, percentage_of
from chat_core.infrastructure.events.bus import (
    AUTHENTICATION_EXPIRED,
    ERROR_BANNER,
    USAGE_LIMIT_EXCEEDED,
    NotificationBus,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.registry import display_name
from chat_core.usage.tiers import lowest_tier_for_model, next_tier


# 服务端错误类型字符串 -> 分类
_TYPE_MAP: Dict[str, ErrorKind] = {
    "AUTHENTICATION_FAILED": ErrorKind.AUTHENTICATION_EXPIRED,
    "AUTHENTICATION_REQUIRED": ErrorKind.AUTHENTICATION_EXPIRED,
    "AUTHENTICATION_EXPIRED": ErrorKind.AUTHENTICATION_EXPIRED,
    "INVALID_TOKEN": ErrorKind.AUTHENTICATION_EXPIRED,
    "DAILY_MESSAGE_LIMIT_EXCEEDED": ErrorKind.DAILY_MESSAGE_LIMIT_EXCEEDED,
    "MONTHLY_LIMIT_EXCEEDED": ErrorKind.MONTHLY_TOKEN_LIMIT_EXCEEDED,
    "MONTHLY_TOKEN_LIMIT_EXCEEDED": ErrorKind.MONTHLY_TOKEN_LIMIT_EXCEEDED,
    "MODEL_NOT_ALLOWED": ErrorKind.MODEL_NOT_ALLOWED,
    "NETWORK_ERROR": ErrorKind.TRANSPORT_FAILURE,
    "TRANSPORT_FAILURE": ErrorKind.TRANSPORT_FAILURE,
    "STREAM_ERROR": ErrorKind.TRANSPORT_FAILURE,
}

AUTH_EXPIRED_MESSAGE = "Authentication expired. Please sign in again."
NETWORK_MESSAGE = "Network error. Please check your connection and try again."
DEFAULT_MESSAGE = "An error occurred. Please try again."


def classify_payload(
    payload: Any,
    status_code: Optional[int] = None,
    model_id: Optional[str] = None,
) -> StructuredError:
    """把错误 body / error 帧转换为 StructuredError，永不抛异常。

    Args:
        payload: 解析后的 JSON（dict）；非 JSON body 传 None 或原始文本。
        status_code: HTTP 状态码，流内错误为 None。
        model_id: 本次请求的模型，用于 ModelNotAllowed 的提示与升级建议。
    """

    if not isinstance(payload, dict):
        return _classify_status(status_code, payload, model_id)

    kind = _TYPE_MAP.get(_type_of(payload), ErrorKind.UNKNOWN)
    current_tier = payload.get("userTier") or payload.get("user_tier")
    allowed = payload.get("allowedModels") or payload.get("allowed_models")
    return StructuredError(
        kind=kind,
        message=_human_message(kind, payload, model_id),
        usage=_usage_snapshot(payload.get("usage")),
        current_tier=current_tier if isinstance(current_tier, str) else None,
        allowed_models=tuple(str(m) for m in allowed) if isinstance(allowed, (list, tuple)) else None,
        remediation_tier=_remediation_tier(kind, current_tier, model_id),
        status_code=status_code,
        raw=payload,
    )


def classify_exception(exc: BaseException, model_id: Optional[str] = None) -> StructuredError:
    """把本地捕获的异常转换为 StructuredError。"""

    if isinstance(exc, AuthenticationError):
        kind = ErrorKind.AUTHENTICATION_EXPIRED
        message = AUTH_EXPIRED_MESSAGE
    elif isinstance(exc, NetworkError):
        kind = ErrorKind.TRANSPORT_FAILURE
        message = exc.message or NETWORK_MESSAGE
    elif isinstance(exc, BusinessError):
        kind = ErrorKind.UNKNOWN
        message = exc.message or DEFAULT_MESSAGE
    else:
        kind = ErrorKind.UNKNOWN
        message = f"Connection error: {exc}"
    raw: Dict[str, Any] = {"exception": type(exc).__name__}
    if isinstance(exc, BusinessError):
        raw["code"] = exc.code
        raw.update(exc.extra)
    return StructuredError(
        kind=kind,
        message=message,
        remediation_tier=_remediation_tier(kind, None, model_id),
        status_code=exc.http_status if isinstance(exc, BusinessError) and exc.http_status >= 400 else None,
        raw=raw,
    )


def topic_for(kind: ErrorKind) -> str:
    if kind.is_entitlement:
        return USAGE_LIMIT_EXCEEDED
    if kind is ErrorKind.AUTHENTICATION_EXPIRED:
        return AUTHENTICATION_EXPIRED
    return ERROR_BANNER


class ErrorClassifier:
    """分类 + 发布。

    Attributes:
        bus: 发布目标；为 None 时只分类不发布。
    """

    def __init__(self, bus: Optional[NotificationBus] = None):
        self.bus = bus

    def from_response(self, status_code: int, body: Any, model_id: Optional[str] = None) -> StructuredError:
        return self.publish(classify_payload(body, status_code=status_code, model_id=model_id))

    def from_frame(self, payload: Dict[str, Any], model_id: Optional[str] = None) -> StructuredError:
        return self.publish(classify_payload(payload, model_id=model_id))

    def from_exception(self, exc: BaseException, model_id: Optional[str] = None) -> StructuredError:
        return self.publish(classify_exception(exc, model_id=model_id))

    def publish(self, error: StructuredError) -> StructuredError:
        logger.warning(
            "Classified error",
            extra={"extra": {
                "kind": error.kind.value,
                "status_code": error.status_code,
                "remediation_tier": error.remediation_tier,
            }},
        )
        if self.bus is not None:
            self.bus.publish(topic_for(error.kind), error)
        return error


# ---- 辅助函数 ----

def _type_of(payload: Dict[str, Any]) -> str:
    for key in ("type", "kind", "error"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            normalized = value.strip().upper()
            if normalized in _TYPE_MAP:
                return normalized
    return ""


def _classify_status(status_code: Optional[int], body: Any, model_id: Optional[str]) -> StructuredError:
    raw: Dict[str, Any] = {}
    if body is not None:
        raw["body"] = str(body)[:500]
    if status_code == 401:
        kind, message = ErrorKind.AUTHENTICATION_EXPIRED, AUTH_EXPIRED_MESSAGE
    elif status_code == 403:
        kind = ErrorKind.MODEL_NOT_ALLOWED
        name = display_name(model_id) if model_id else "This model"
        message = f"{name} is not available on your current plan. Please upgrade or select a different model."
    elif status_code == 429:
        kind, message = ErrorKind.UNKNOWN, "Rate limit exceeded. Please try again in a moment."
    elif status_code is not None:
        kind, message = ErrorKind.UNKNOWN, f"Request failed: {status_code}"
    else:
        kind, message = ErrorKind.UNKNOWN, DEFAULT_MESSAGE
    return StructuredError(
        kind=kind,
        message=message,
        remediation_tier=_remediation_tier(kind, None, model_id),
        status_code=status_code,
        raw=raw,
    )


def _human_message(kind: ErrorKind, payload: Dict[str, Any], model_id: Optional[str]) -> str:
    if kind is ErrorKind.DAILY_MESSAGE_LIMIT_EXCEEDED:
        return "Daily message limit reached. Upgrade to Basic for unlimited messages!"
    if kind is ErrorKind.MONTHLY_TOKEN_LIMIT_EXCEEDED:
        return "Monthly token limit exceeded. Upgrade for more tokens!"
    if kind is ErrorKind.MODEL_NOT_ALLOWED:
        name = display_name(model_id) if model_id else "This model"
        return f"{name} requires a higher tier. Please upgrade to access this model."
    if kind is ErrorKind.AUTHENTICATION_EXPIRED:
        return AUTH_EXPIRED_MESSAGE
    message = payload.get("message")
    if isinstance(message, str) and message.strip():
        return message
    if kind is ErrorKind.TRANSPORT_FAILURE:
        return NETWORK_MESSAGE
    return DEFAULT_MESSAGE


def _usage_snapshot(raw: Any) -> Optional[UsageSnapshot]:
    if not isinstance(raw, dict):
        return None
    current = _as_int(raw.get("current"))
    limit = _as_int(raw.get("limit"))
    percentage = raw.get("percentage")
    if isinstance(percentage, (int, float)) and not isinstance(percentage, bool):
        pct = float(percentage)
    else:
        pct = percentage_of(current, limit)
    return UsageSnapshot(current=current, limit=limit, percentage=pct, reset_at=_parse_instant(raw.get("resetTime")))


def _remediation_tier(kind: ErrorKind, current_tier: Any, model_id: Optional[str]) -> Optional[str]:
    if kind is ErrorKind.DAILY_MESSAGE_LIMIT_EXCEEDED:
        return "basic"
    if kind is ErrorKind.MONTHLY_TOKEN_LIMIT_EXCEEDED:
        return next_tier(current_tier if isinstance(current_tier, str) else None)
    if kind is ErrorKind.MODEL_NOT_ALLOWED:
        return lowest_tier_for_model(model_id) if model_id else "pro"
    return None


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _parse_instant(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def allowed_models_tuple(values: Any) -> Optional[Tuple[str, ...]]:
    if isinstance(values, (list, tuple, set, frozenset)):
        return tuple(sorted(str(v) for v in values))
    return None
