from datetime import datetime, timezone

from chat_core.domain.errors import ErrorKind
from chat_core.domain.exceptions import AuthenticationError, BusinessError, NetworkError
from chat_core.errors.classifier import (
    ErrorClassifier,
    allowed_models_tuple,
    classify_exception,
    classify_payload,
    topic_for,
)
from chat_core.infrastructure.events.bus import (
    AUTHENTICATION_EXPIRED,
    ERROR_BANNER,
    USAGE_LIMIT_EXCEEDED,
    NotificationBus,
)


def test_daily_limit_payload():
    payload = {
        "error": "Daily message limit exceeded",
        "type": "DAILY_MESSAGE_LIMIT_EXCEEDED",
        "usage": {"current": 25, "limit": 25, "percentage": 100},
        "userTier": "free",
    }
    err = classify_payload(payload, status_code=429)
    assert err.kind is ErrorKind.DAILY_MESSAGE_LIMIT_EXCEEDED
    assert err.usage.percentage == 100
    assert err.usage.current == 25
    assert err.current_tier == "free"
    assert err.remediation_tier == "basic"
    assert err.status_code == 429


def test_monthly_limit_suggests_next_tier():
    payload = {
        "type": "MONTHLY_LIMIT_EXCEEDED",
        "usage": {"current": 990000, "limit": 1000000, "resetTime": "2025-07-15T00:00:00Z"},
        "userTier": "basic",
    }
    err = classify_payload(payload)
    assert err.kind is ErrorKind.MONTHLY_TOKEN_LIMIT_EXCEEDED
    assert err.remediation_tier == "pro"
    assert err.usage.percentage == 99
    assert err.usage.reset_at == datetime(2025, 7, 15, tzinfo=timezone.utc)


def test_model_not_allowed_uses_lowest_tier():
    payload = {"type": "MODEL_NOT_ALLOWED", "allowedModels": ["gpt-4o-mini", "claude-3-5-haiku-20241022"]}
    err = classify_payload(payload, model_id="claude-sonnet-4-20250514")
    assert err.kind is ErrorKind.MODEL_NOT_ALLOWED
    assert err.remediation_tier == "basic"
    assert err.allowed_models == ("gpt-4o-mini", "claude-3-5-haiku-20241022")
    assert "Claude Sonnet 4" in err.message


def test_model_not_allowed_unknown_model_falls_back_to_pro():
    err = classify_payload({"type": "MODEL_NOT_ALLOWED"}, model_id="mystery-model")
    assert err.remediation_tier == "pro"


def test_kind_field_and_case_insensitive_type():
    assert classify_payload({"kind": "authentication_failed"}).kind is ErrorKind.AUTHENTICATION_EXPIRED
    assert classify_payload({"error": "NETWORK_ERROR"}).kind is ErrorKind.TRANSPORT_FAILURE


def test_unrecognized_payload_is_unknown_and_keeps_message():
    err = classify_payload({"error": "boom", "message": "Upstream exploded"}, status_code=500)
    assert err.kind is ErrorKind.UNKNOWN
    assert err.message == "Upstream exploded"
    assert err.remediation_tier is None


def test_status_fallback_for_non_json_body():
    assert classify_payload("Unauthorized", status_code=401).kind is ErrorKind.AUTHENTICATION_EXPIRED
    assert classify_payload(None, status_code=403, model_id="gpt-4o").kind is ErrorKind.MODEL_NOT_ALLOWED
    err = classify_payload("<html>", status_code=502)
    assert err.kind is ErrorKind.UNKNOWN
    assert err.message == "Request failed: 502"


def test_classify_exception():
    assert classify_exception(AuthenticationError(code="X", message="x")).kind is ErrorKind.AUTHENTICATION_EXPIRED
    net = classify_exception(NetworkError(code="NETWORK_ERROR", message="offline", detail="refused"))
    assert net.kind is ErrorKind.TRANSPORT_FAILURE
    assert net.raw["detail"] == "refused"
    biz = classify_exception(BusinessError(code="STORE_WRITE_ERROR", message="disk full"))
    assert biz.kind is ErrorKind.UNKNOWN
    assert biz.raw["code"] == "STORE_WRITE_ERROR"
    other = classify_exception(RuntimeError("weird"))
    assert other.kind is ErrorKind.UNKNOWN
    assert "weird" in other.message


def test_topic_routing():
    assert topic_for(ErrorKind.DAILY_MESSAGE_LIMIT_EXCEEDED) == USAGE_LIMIT_EXCEEDED
    assert topic_for(ErrorKind.MODEL_NOT_ALLOWED) == USAGE_LIMIT_EXCEEDED
    assert topic_for(ErrorKind.AUTHENTICATION_EXPIRED) == AUTHENTICATION_EXPIRED
    assert topic_for(ErrorKind.TRANSPORT_FAILURE) == ERROR_BANNER
    assert topic_for(ErrorKind.UNKNOWN) == ERROR_BANNER


def test_classifier_publishes_on_bus():
    bus = NotificationBus()
    banners, limits = [], []
    bus.subscribe(ERROR_BANNER, banners.append)
    bus.subscribe(USAGE_LIMIT_EXCEEDED, limits.append)
    classifier = ErrorClassifier(bus)

    classifier.from_response(500, None)
    classifier.from_frame({"type": "DAILY_MESSAGE_LIMIT_EXCEEDED"})

    assert len(banners) == 1
    assert banners[0].status_code == 500
    assert limits[0].kind is ErrorKind.DAILY_MESSAGE_LIMIT_EXCEEDED


def test_classifier_without_bus_only_classifies():
    err = ErrorClassifier().from_frame({"type": "STREAM_ERROR"})
    assert err.kind is ErrorKind.TRANSPORT_FAILURE


def test_allowed_models_tuple_is_sorted():
    assert allowed_models_tuple(frozenset({"b", "a"})) == ("a", "b")
    assert allowed_models_tuple(None) is None
