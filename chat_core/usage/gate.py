"""发送前准入检查。

在任何网络调用之前执行，依据档位与用量快照判断本次发送：

1. 模型不在档位允许列表 → 阻止，建议升级到包含该模型的最低档位（找不到则 pro）。
2. 有每日消息配额且剩余 <= 0 → 阻止。
3. 月度 token 用量 >= 阻止阈值（默认 95%）→ 阻止。
4. 当日仅剩 1 条，或月度用量 >= 提醒阈值（默认 90%）→ 需要确认；
   本次编辑已提醒过则放行。
5. 其余情况放行。
"""

from dataclasses import dataclass
from typing import Optional

from chat_core.config.settings import settings
from chat_core.domain.errors import ErrorKind
from chat_core.domain.usage import UsageSnapshot, UserTier
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.registry import display_name
from chat_core.usage.tiers import lowest_tier_for_model, next_tier


@dataclass(frozen=True)
class GateDecision:
    """准入结果。

    - allowed: 是否可以立即发送。
    - requires_confirmation: 需要用户再次提交确认（allowed 此时为 False）。
    - remediation_tier: 被阻止时建议升级到的档位。
    - reason: 被阻止的原因（封闭错误分类中的配额类）。
    - message: 给用户看的提示。
    """

    allowed: bool
    requires_confirmation: bool = False
    remediation_tier: Optional[str] = None
    reason: Optional[ErrorKind] = None
    message: str = ""

    @property
    def blocked(self) -> bool:
        return not self.allowed and not self.requires_confirmation


ALLOW = GateDecision(allowed=True)


class UsageGate:
    def __init__(self, cfg=settings):
        self._settings = cfg

    def can_send(
        self,
        draft_text: str,
        target_model_id: str,
        tier: UserTier,
        usage: UsageSnapshot,
        daily_messages: UsageSnapshot,
        already_warned: bool,
    ) -> GateDecision:
        decision = self._evaluate(target_model_id, tier, usage, daily_messages, already_warned)
        if not decision.allowed:
            logger.info(
                "Usage gate held message",
                extra={"extra": {
                    "tier": tier.name,
                    "model": target_model_id,
                    "reason": decision.reason.value if decision.reason else None,
                    "requires_confirmation": decision.requires_confirmation,
                    "draft_chars": len(draft_text or ""),
                }},
            )
        return decision

    def _evaluate(
        self,
        model_id: str,
        tier: UserTier,
        usage: UsageSnapshot,
        daily_messages: UsageSnapshot,
        already_warned: bool,
    ) -> GateDecision:
        if not tier.allows(model_id):
            return GateDecision(
                allowed=False,
                remediation_tier=lowest_tier_for_model(model_id),
                reason=ErrorKind.MODEL_NOT_ALLOWED,
                message=f"{display_name(model_id)} requires a higher tier. Please upgrade to access this model.",
            )

        remaining: Optional[int] = None
        if tier.has_daily_limit:
            remaining = tier.daily_messages - daily_messages.current
            if remaining <= 0:
                return GateDecision(
                    allowed=False,
                    remediation_tier="basic",
                    reason=ErrorKind.DAILY_MESSAGE_LIMIT_EXCEEDED,
                    message="Daily message limit reached. Upgrade to Basic for unlimited messages!",
                )

        pct = usage.percentage
        if pct >= self._settings.monthly_block_percentage:
            return GateDecision(
                allowed=False,
                remediation_tier=next_tier(tier.name),
                reason=ErrorKind.MONTHLY_TOKEN_LIMIT_EXCEEDED,
                message="Monthly token limit almost reached. Upgrade to continue chatting!",
            )

        low_daily = remaining is not None and remaining == self._settings.daily_warning_remaining
        high_monthly = pct >= self._settings.monthly_warning_percentage
        if (low_daily or high_monthly) and not already_warned:
            if low_daily:
                message = f"{remaining} message{'s' if remaining != 1 else ''} remaining today. Upgrade for unlimited access."
            else:
                message = f"{round(pct)}% of monthly tokens used. Consider upgrading for more capacity."
            return GateDecision(allowed=False, requires_confirmation=True, message=message)

        return ALLOW


class ComposeState:
    """单次消息编辑内的“只提醒一次”状态。

    草稿被清空时重置；发送成功后也会重置。
    """

    def __init__(self) -> None:
        self.warned = False

    def update_draft(self, text: str) -> None:
        if not (text or "").strip():
            self.warned = False

    def mark_warned(self) -> None:
        self.warned = True

    def reset(self) -> None:
        self.warned = False
