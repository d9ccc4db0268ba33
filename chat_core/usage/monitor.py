"""用量快照的定时刷新与缓存。

UsageMonitor 本身实现 TierService 接口：ConversationStore 通过它读取档位与用量，
它再从真正的 TierService（通常是远端账户服务）拉取并缓存最新快照。

刷新时机：
- start() 之后每隔 settings.usage_refresh_interval 秒（守护线程上的 threading.Timer）。
- 总线上收到 usage_refresh_requested（每次回答完成后 Store 会发布）。

刷新失败只记录日志，保留上一次的快照；与流式交换并发时以最后一次写入为准。
"""

import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from chat_core.config.settings import settings
from chat_core.domain.usage import EMPTY_USAGE, TierService, UsageSnapshot, UserTier
from chat_core.infrastructure.events.bus import USAGE_REFRESH_REQUESTED, NotificationBus
from chat_core.infrastructure.logging.logger import logger
from chat_core.usage.tiers import FREE, warning_level


class UsageMonitor:
    def __init__(self, source: TierService, bus: Optional[NotificationBus] = None, cfg=settings):
        self._source = source
        self._settings = cfg
        self._lock = threading.Lock()
        self._tier: Optional[UserTier] = None
        self._usage: UsageSnapshot = EMPTY_USAGE
        self._daily: UsageSnapshot = EMPTY_USAGE
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self.refreshed_at: Optional[datetime] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        if bus is not None:
            self._unsubscribe = bus.subscribe(USAGE_REFRESH_REQUESTED, self._on_refresh_requested)

    # ---- TierService ----

    def get_current_tier(self) -> UserTier:
        self._ensure_loaded()
        # 从未成功拉取过档位时按最严格的 free 处理
        return self._tier or FREE

    def get_usage_snapshot(self) -> UsageSnapshot:
        self._ensure_loaded()
        return self._usage

    def get_daily_message_snapshot(self) -> UsageSnapshot:
        self._ensure_loaded()
        return self._daily

    # ---- 刷新 ----

    def refresh(self) -> bool:
        """从来源拉取一次快照；成功返回 True。"""

        try:
            tier = self._source.get_current_tier()
            usage = self._source.get_usage_snapshot()
            daily = self._source.get_daily_message_snapshot()
        except Exception:
            logger.exception("Usage refresh failed, keeping previous snapshot")
            return False
        with self._lock:
            self._tier = tier
            self._usage = usage
            self._daily = daily
            self.refreshed_at = datetime.now(timezone.utc)
        logger.info(
            "Usage refreshed",
            extra={"extra": {
                "tier": tier.name,
                "percentage": usage.percentage,
                "daily_messages": daily.current,
            }},
        )
        return True

    def warning_level(self) -> Optional[int]:
        """当前月度用量已越过的最高提醒阈值。"""

        return warning_level(self.get_current_tier(), self.get_usage_snapshot().percentage)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self.refresh()
        self._schedule()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def close(self) -> None:
        self.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def running(self) -> bool:
        return self._running

    def _schedule(self) -> None:
        with self._lock:
            if not self._running:
                return
            timer = threading.Timer(self._settings.usage_refresh_interval, self._tick)
            timer.daemon = True
            self._timer = timer
        timer.start()

    def _tick(self) -> None:
        if not self._running:
            return
        self.refresh()
        self._schedule()

    def _ensure_loaded(self) -> None:
        if self.refreshed_at is None:
            self.refresh()

    def _on_refresh_requested(self, _payload: object) -> None:
        self.refresh()
