from clonewarden.classifier import RawFailure, classify_error, system_error
from clonewarden.client import failure_from_mapping
from clonewarden.models import ErrorContext

from conftest import NOW


def _classify(**kwargs):
    return classify_error(RawFailure(**kwargs), ErrorContext(session_id="s1", item_id="a1"), clock=lambda: NOW)


def test_status_429_is_retryable_rate_limit():
    error = _classify(kind="http", status=429)
    assert error.type == "RATE_LIMIT"
    assert error.retryable is True
    assert error.max_retries == 5
    assert error.suggested_delay == 60.0
    assert error.session_id == "s1"
    assert error.item_id == "a1"


def test_rate_limit_detected_from_message_and_code():
    assert _classify(kind="other", message="Rate limit reached").type == "RATE_LIMIT"
    assert _classify(kind="other", code="rate_limited").type == "RATE_LIMIT"


def test_rule_order_prefers_rate_limit_over_auth():
    error = _classify(kind="http", status=403, message="rate limit for unauthorized caller")
    assert error.type == "RATE_LIMIT"


def test_auth_and_quota_are_not_retryable():
    auth = _classify(kind="http", status=401)
    assert auth.type == "AUTHENTICATION_ERROR"
    assert auth.severity == "HIGH"
    assert auth.retryable is False

    quota = _classify(kind="http", status=402)
    assert quota.type == "QUOTA_EXCEEDED"
    assert quota.severity == "CRITICAL"
    assert quota.retryable is False
    assert _classify(kind="other", message="monthly budget exhausted").type == "QUOTA_EXCEEDED"


def test_timeout_and_network_failures():
    assert _classify(kind="timeout", code="ETIMEDOUT").type == "TIMEOUT_ERROR"
    assert _classify(kind="network", code="ECONNRESET").type == "TIMEOUT_ERROR"
    assert _classify(kind="other", message="read timed out").type == "TIMEOUT_ERROR"

    network = _classify(kind="network", code="ENOTFOUND")
    assert network.type == "NETWORK_ERROR"
    assert network.suggested_delay == 30.0
    assert _classify(kind="http", status=503).type == "NETWORK_ERROR"


def test_client_errors_become_api_errors():
    not_found = _classify(kind="http", status=404, message="user not found")
    assert not_found.type == "API_ERROR"
    assert not_found.retryable is False
    assert "user not found" in not_found.message

    conflict = _classify(kind="http", status=409)
    assert conflict.retryable is True
    assert conflict.suggested_delay == 5.0
    assert _classify(kind="http", status=408).retryable is True


def test_unknown_failures_fall_through():
    error = _classify(kind="other", message="something odd")
    assert error.type == "UNKNOWN_ERROR"
    assert error.retryable is True
    assert error.max_retries == 2
    assert error.message == "something odd"


def test_classification_is_deterministic():
    first = _classify(kind="http", status=500, message="boom")
    second = _classify(kind="http", status=500, message="boom")
    assert first == second


def test_system_error_is_critical():
    error = system_error("db gone", "s9", clock=lambda: NOW)
    assert error.severity == "CRITICAL"
    assert error.code == "SYSTEM"
    assert error.retryable is False
    assert error.session_id == "s9"


def test_unrecognised_code_from_payload_is_unknown():
    failure = failure_from_mapping({"code": "INVALID_USERNAME", "message": "bad user"})
    error = classify_error(failure, clock=lambda: NOW)
    assert error.type == "UNKNOWN_ERROR"
    assert error.max_retries == 2
    assert error.suggested_delay == 15.0
    assert error.code == "INVALID_USERNAME"

    assert classify_error(failure_from_mapping({"code": "enotfound"}), clock=lambda: NOW).type == "NETWORK_ERROR"
    assert classify_error(failure_from_mapping({"code": "ECONNRESET"}), clock=lambda: NOW).type == "TIMEOUT_ERROR"
