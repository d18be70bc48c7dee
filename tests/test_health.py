from datetime import timedelta

import pytest

from clonewarden.health import AccountHealthMonitor, next_error_probability, recommended_action

from conftest import NOW, make_error


def _monitor(lookup=None):
    return AccountHealthMonitor(clock=lambda: NOW, last_success_lookup=lookup)


def test_clean_item_is_fully_healthy():
    health = _monitor().analyze("a1", [])
    assert health.health_score == 100.0
    assert health.next_error_probability == 0.0
    assert health.recommended_action == "CONTINUE"
    assert health.suspicious_activity is False


def test_auth_failures_reduce_score_and_flag_suspicion():
    history = [make_error("AUTHENTICATION_ERROR", severity="HIGH", item_id="a1") for _ in range(4)]
    health = _monitor().analyze("a1", history)
    assert health.consecutive_failures == 4
    assert health.suspicious_activity is True
    assert health.health_score == pytest.approx(100 - 20 - (4 / 24) * 10 - 20)
    assert health.recommended_action == "PAUSE"


def test_consecutive_failures_stop_at_first_mild_error():
    history = [
        make_error("API_ERROR", severity="HIGH", item_id="a1"),
        make_error("TIMEOUT_ERROR", severity="MEDIUM", item_id="a1"),
        make_error("API_ERROR", severity="HIGH", item_id="a1"),
    ]
    assert _monitor().analyze("a1", history).consecutive_failures == 1


def test_scores_and_probability_stay_in_range():
    history = [make_error("API_ERROR", severity="CRITICAL", item_id="a1") for _ in range(40)]
    health = _monitor().analyze("a1", history)
    assert health.health_score == 0.0
    assert 0.0 <= health.next_error_probability <= 0.95
    assert health.recommended_action == "QUARANTINE"


def test_stale_last_success_costs_a_point_per_day():
    lookup = lambda item_id: (NOW - timedelta(days=2)).isoformat()  # noqa: E731
    health = _monitor(lookup).analyze("a1", [])
    assert health.health_score == pytest.approx(98.0)
    assert health.last_success_at == NOW - timedelta(days=2)


def test_results_are_cached_until_invalidated():
    monitor = _monitor()
    first = monitor.analyze("a1", [])
    history = [make_error("AUTHENTICATION_ERROR", severity="HIGH", item_id="a1")]
    assert monitor.analyze("a1", history) is first
    monitor.invalidate("a1")
    assert monitor.analyze("a1", history).consecutive_failures == 1


def test_other_items_errors_are_ignored():
    history = [make_error("API_ERROR", severity="HIGH", item_id="b2") for _ in range(5)]
    assert _monitor().analyze("a1", history).health_score == 100.0


def test_action_thresholds():
    assert recommended_action(15, 0.1) == "QUARANTINE"
    assert recommended_action(90, 0.85) == "QUARANTINE"
    assert recommended_action(35, 0.1) == "INVESTIGATE"
    assert recommended_action(65, 0.1) == "PAUSE"
    assert recommended_action(90, 0.1) == "CONTINUE"
    assert next_error_probability(10, 100, 0) == pytest.approx(0.95)
