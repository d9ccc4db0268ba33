"""进程内发布/订阅通道。

发布者（ErrorClassifier、ConversationStore）与订阅者（弹窗、横幅、用量监视器）
都显式持有同一个 NotificationBus 实例，不依赖任何全局广播。
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

from chat_core.infrastructure.logging.logger import logger


# 配额 / 权限类错误（阻断式弹窗）
USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"
# 会话过期，需要重新登录
AUTHENTICATION_EXPIRED = "authentication_expired"
# 传输失败 / 未知错误（可关闭横幅）
ERROR_BANNER = "error_banner"
# 接近配额的软提醒，需要用户再次提交确认
USAGE_WARNING = "usage_warning"
# 请求刷新用量快照（回答完成后发出）
USAGE_REFRESH_REQUESTED = "usage_refresh_requested"

Handler = Callable[[Any], None]


class NotificationBus:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """订阅 topic，返回取消订阅的函数。"""

        with self._lock:
            self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, topic: str, payload: Any = None) -> int:
        """同步投递给当前所有订阅者，返回成功投递的数量。

        单个订阅者抛出的异常会被记录，不影响其他订阅者。
        """

        with self._lock:
            handlers = list(self._handlers.get(topic, []))
        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception:
                logger.exception(
                    "Notification handler failed",
                    extra={"extra": {"topic": topic, "handler": getattr(handler, "__qualname__", repr(handler))}},
                )
        return delivered

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._handlers.get(topic, []))
