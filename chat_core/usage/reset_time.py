"""配额重置时间计算（纯日期运算）。

- 每日配额：在本地零点重置。
- 每月配额：在账单锚定日（billing anchor）的零点重置。
  锚定日超过目标月份天数时，取该月最后一天（例如锚定 31 日，在 4 月为 30 日，
  在平年 2 月为 28 日）。

所有函数都保留入参 now 的 tzinfo；naive datetime 视为本地时间。
"""

import calendar
from datetime import date, datetime, time, timedelta
from typing import Optional

from chat_core.domain.exceptions import ValidationError


_DAY = timedelta(hours=24)


def next_daily_reset(now: datetime) -> datetime:
    """now 之后的下一个本地零点。"""

    return datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)


def next_monthly_reset(now: datetime, anchor_day: int) -> datetime:
    """下一个月度重置时刻。

    当月锚定日零点严格晚于 now 时取当月，否则取下个月。
    """

    if not 1 <= anchor_day <= 31:
        raise ValidationError(
            code="INVALID_ANCHOR_DAY",
            message=f"anchor_day must be within 1..31, got {anchor_day}",
        )
    candidate = _anchor_instant(now.year, now.month, anchor_day, now)
    if candidate > now:
        return candidate
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    return _anchor_instant(year, month, anchor_day, now)


def billing_anchor_day(billing_period_start: Optional[datetime]) -> Optional[int]:
    """从账单周期起点取出锚定日。"""

    if billing_period_start is None:
        return None
    return billing_period_start.day


def format_reset(instant: datetime, now: datetime) -> str:
    """把重置时刻渲染成给用户看的文本。

    24 小时内显示相对时间 "in 5h 12m"，否则显示锚定日期 "on Jul 15"。
    """

    delta = instant - now
    if delta < _DAY:
        total_seconds = max(int(delta.total_seconds()), 0)
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        return f"in {hours}h {minutes}m"
    return f"on {instant:%b} {instant.day}"


def _anchor_instant(year: int, month: int, anchor_day: int, like: datetime) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return datetime.combine(date(year, month, day), time.min, tzinfo=like.tzinfo)
