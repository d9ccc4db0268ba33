"""结构化错误模型（封闭分类）。

ErrorClassifier 把 HTTP 状态 + body、流内 error 帧、传输异常统一转换为
StructuredError；ConversationStore 的回滚路径与 UI 协作者都只消费本结构。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .usage import UsageSnapshot


class ErrorKind(str, Enum):
    AUTHENTICATION_EXPIRED = "AuthenticationExpired"
    DAILY_MESSAGE_LIMIT_EXCEEDED = "DailyMessageLimitExceeded"
    MONTHLY_TOKEN_LIMIT_EXCEEDED = "MonthlyTokenLimitExceeded"
    MODEL_NOT_ALLOWED = "ModelNotAllowed"
    TRANSPORT_FAILURE = "TransportFailure"
    UNKNOWN = "Unknown"

    @property
    def is_entitlement(self) -> bool:
        """配额 / 权限类错误：以阻断式通知呈现，并附带升级建议。"""

        return self in _ENTITLEMENT_KINDS

    @property
    def is_dismissible(self) -> bool:
        """可关闭的横幅类错误，不自动重试，由用户重新提交。"""

        return self in (ErrorKind.TRANSPORT_FAILURE, ErrorKind.UNKNOWN)


_ENTITLEMENT_KINDS = frozenset(
    {
        ErrorKind.DAILY_MESSAGE_LIMIT_EXCEEDED,
        ErrorKind.MONTHLY_TOKEN_LIMIT_EXCEEDED,
        ErrorKind.MODEL_NOT_ALLOWED,
    }
)


@dataclass(frozen=True)
class StructuredError:
    """一次失败的结构化描述。

    - kind: 封闭分类中的错误类型。
    - message: 面向用户的提示文本。
    - usage: 服务端返回的用量快照（配额类错误才有）。
    - current_tier: 用户当前档位名。
    - allowed_models: 当前档位可用模型（ModelNotAllowed 时由服务端给出）。
    - remediation_tier: 建议升级到的档位。
    - status_code: 对应的 HTTP 状态码（流内错误为 None）。
    - raw: 原始错误负载，便于日志排查。
    """

    kind: ErrorKind
    message: str
    usage: Optional[UsageSnapshot] = None
    current_tier: Optional[str] = None
    allowed_models: Optional[Tuple[str, ...]] = None
    remediation_tier: Optional[str] = None
    status_code: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)
