"""用量、档位与外部协作者协议。

UsageSnapshot / UserTier 由外部 TierService 提供，本核心只读不写；
AuthProvider 提供 bearer token 与会话失效入口。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Optional, Protocol, Tuple


# daily_messages 的“无限制”哨兵值
UNLIMITED = -1


@dataclass(frozen=True)
class UsageSnapshot:
    """某一时刻的用量 / 配额快照。

    - current: 已用量（token 数或消息数）。
    - limit: 配额上限；UNLIMITED 或 0 表示无上限。
    - percentage: 已用百分比（0-100，可超过 100）。
    - reset_at: 下一次重置时刻（可选）。
    """

    current: int
    limit: int
    percentage: float
    reset_at: Optional[datetime] = None

    @classmethod
    def from_counts(cls, current: int, limit: int, reset_at: Optional[datetime] = None) -> "UsageSnapshot":
        return cls(current=current, limit=limit, percentage=percentage_of(current, limit), reset_at=reset_at)

    @property
    def remaining(self) -> Optional[int]:
        """剩余额度；无上限时返回 None。"""

        if self.limit <= 0:
            return None
        return self.limit - self.current


EMPTY_USAGE = UsageSnapshot(current=0, limit=0, percentage=0.0)


def percentage_of(current: int, limit: int) -> float:
    if limit <= 0:
        return 0.0
    return float(round(current / limit * 100))


@dataclass(frozen=True)
class UserTier:
    """一个订阅档位。

    - name: 档位名，如 free / basic / pro。
    - monthly_tokens: 每月 token 配额。
    - daily_messages: 每日消息配额，UNLIMITED 表示不限，0 表示当天不能发送。
    - allowed_models: 该档位可用的模型 ID 集合。
    - warnings: 月度用量提醒阈值（百分比，升序）。
    - price: 展示用价格（可选）。
    """

    name: str
    monthly_tokens: int
    daily_messages: int
    allowed_models: FrozenSet[str] = field(default_factory=frozenset)
    warnings: Tuple[int, ...] = ()
    price: Optional[str] = None

    @property
    def has_daily_limit(self) -> bool:
        return self.daily_messages != UNLIMITED

    def allows(self, model_id: str) -> bool:
        return model_id in self.allowed_models


class AuthProvider(Protocol):
    def get_bearer_token(self) -> Optional[str]:
        ...

    def is_valid(self) -> bool:
        ...

    def invalidate_session(self) -> None:
        ...


class TierService(Protocol):
    def get_usage_snapshot(self) -> UsageSnapshot:
        """月度 token 用量快照。"""
        ...

    def get_daily_message_snapshot(self) -> UsageSnapshot:
        """当日消息数快照。"""
        ...

    def get_current_tier(self) -> UserTier:
        ...
