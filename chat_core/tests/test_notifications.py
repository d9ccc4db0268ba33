import threading

from chat_core.infrastructure.events.bus import ERROR_BANNER, USAGE_WARNING, NotificationBus
from chat_core.providers.base import CancellationToken


def test_bus_fans_out_to_all_subscribers():
    bus = NotificationBus()
    first, second = [], []
    bus.subscribe(ERROR_BANNER, first.append)
    bus.subscribe(ERROR_BANNER, second.append)

    assert bus.publish(ERROR_BANNER, "oops") == 2
    assert first == ["oops"]
    assert second == ["oops"]
    assert bus.publish(USAGE_WARNING, "nobody") == 0


def test_bus_unsubscribe():
    bus = NotificationBus()
    received = []
    unsubscribe = bus.subscribe(ERROR_BANNER, received.append)
    unsubscribe()
    unsubscribe()
    bus.publish(ERROR_BANNER, "x")
    assert received == []
    assert bus.subscriber_count(ERROR_BANNER) == 0


def test_failing_handler_does_not_block_others():
    bus = NotificationBus()
    received = []

    def broken(_payload):
        raise RuntimeError("handler bug")

    bus.subscribe(ERROR_BANNER, broken)
    bus.subscribe(ERROR_BANNER, received.append)

    assert bus.publish(ERROR_BANNER, 1) == 1
    assert received == [1]


def test_cancellation_token_fires_callbacks_once():
    token = CancellationToken()
    calls = []
    token.add_callback(lambda: calls.append("a"))
    assert not token.cancelled

    token.cancel()
    token.cancel()
    assert token.cancelled
    assert calls == ["a"]

    token.add_callback(lambda: calls.append("late"))
    assert calls == ["a", "late"]


def test_cancellation_token_from_other_thread():
    token = CancellationToken()
    worker = threading.Thread(target=token.cancel)
    worker.start()
    worker.join(timeout=5)
    assert token.cancelled
