from clonewarden.models import ErrorContext
from clonewarden.patterns import (
    ErrorPatternAnalyzer,
    ManualScheduler,
    predicted_impact,
    suggested_mitigation,
)

from conftest import NOW, make_error


def _analyzer(scheduler=None, history_size=10000):
    return ErrorPatternAnalyzer(history_size=history_size, scheduler=scheduler, clock=lambda: NOW)


def test_recompute_waits_for_scheduler():
    scheduler = ManualScheduler()
    analyzer = _analyzer(scheduler)
    for _ in range(5):
        analyzer.add_error(make_error("RATE_LIMIT"))

    assert scheduler.pending == 1
    assert analyzer.patterns() == []

    assert scheduler.run_pending() == 1
    by_id = {pattern.pattern_id: pattern for pattern in analyzer.patterns()}
    pattern = by_id["freq_RATE_LIMIT_5min"]
    assert pattern.frequency == 5
    assert pattern.confidence == 0.25
    assert pattern.mitigation == "PREVENTIVE"
    assert pattern.predicted_impact == "LOW"
    assert "seq_RATE_LIMIT_RATE_LIMIT_RATE_LIMIT_5min" in by_id


def test_windows_only_count_recent_errors():
    analyzer = _analyzer()
    for _ in range(5):
        analyzer.add_error(make_error("NETWORK_ERROR", minutes_ago=10))
    ids = {pattern.pattern_id for pattern in analyzer.patterns()}
    assert "freq_NETWORK_ERROR_5min" not in ids
    assert "freq_NETWORK_ERROR_30min" in ids
    assert "freq_NETWORK_ERROR_24hour" in ids


def test_item_patterns_and_matching():
    analyzer = _analyzer()
    for error_type in ("TIMEOUT_ERROR", "NETWORK_ERROR", "API_ERROR"):
        analyzer.add_error(make_error(error_type, severity="HIGH", item_id="acct1"))

    match = analyzer.matches_pattern(ErrorContext(session_id="s1", item_id="acct1"))
    assert match.matched is True
    assert all("acct1" in pattern.item_ids for pattern in match.patterns)
    assert len(match.patterns) == 4
    assert match.risk_level == 1.0

    other = analyzer.matches_pattern(ErrorContext(session_id="s1", item_id="acct2"))
    assert other.matched is False
    assert other.risk_level == 0.0


def test_history_is_bounded_and_newest_first():
    analyzer = _analyzer(history_size=3)
    for minutes in (5, 4, 3, 2):
        analyzer.add_error(make_error("API_ERROR", minutes_ago=minutes))
    history = analyzer.history()
    assert len(history) == 3
    assert history[0].timestamp > history[-1].timestamp


def test_system_analytics_flags_critical_patterns():
    analyzer = _analyzer()
    assert analyzer.system_analytics()["system_health"] == "EXCELLENT"
    for _ in range(5):
        analyzer.add_error(make_error("QUOTA_EXCEEDED", severity="CRITICAL"))
    analytics = analyzer.system_analytics()
    assert analytics["system_health"] == "POOR"
    assert analytics["errors_by_type"] == {"QUOTA_EXCEEDED": 5}
    assert "freq_QUOTA_EXCEEDED_5min" in analytics["critical_patterns"]


def test_impact_and_mitigation_tables():
    assert predicted_impact("QUOTA_EXCEEDED", 1) == "CRITICAL"
    assert predicted_impact("API_ERROR", 16) == "CRITICAL"
    assert predicted_impact("AUTHENTICATION_ERROR", 1) == "HIGH"
    assert predicted_impact("API_ERROR", 6) == "MEDIUM"
    assert predicted_impact("API_ERROR", 5) == "LOW"
    assert suggested_mitigation("RATE_LIMIT", 1) == "PREVENTIVE"
    assert suggested_mitigation("API_ERROR", 11) == "PROACTIVE"
    assert suggested_mitigation("API_ERROR", 3) == "REACTIVE"
