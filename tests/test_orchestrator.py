import random
from dataclasses import replace

import pytest

from clonewarden.classifier import RawFailure
from clonewarden.config import default_config
from clonewarden.notify import MemoryNotifier
from clonewarden.orchestrator import (
    BulkConfigError,
    BulkJobConfig,
    BulkOrchestrator,
    estimate_session_cost,
    validate_job_config,
)
from clonewarden.sessions import InvalidTransitionError
from clonewarden.storage import (
    create_session,
    get_item,
    get_session,
    list_session_errors,
    upsert_item,
)

from conftest import FakeClient, SleepRecorder


def _orchestrator(conn, client, notifier=None, sleep=None, config=None):
    return BulkOrchestrator(
        conn,
        config=config or default_config(),
        client=client,
        notifier=notifier,
        sleep=sleep or SleepRecorder(),
        rng=random.Random(3),
    )


def _job(items, **kwargs):
    return BulkJobConfig(work_type="ACCOUNT_METRICS", item_ids=list(items), **kwargs)


def test_job_validation_messages():
    cases = [
        (_job([]), "Target items list cannot be empty"),
        (_job(["a"], batch_size=51), "Batch size must be between 1 and 50"),
        (_job(["a"], max_concurrent_requests=0), "Max concurrent requests must be between 1 and 10"),
        (_job(["a"], cost_limit=150.0), "Cost limit must be between $0.01 and $100.00"),
        (BulkJobConfig(work_type="SCRAPE_ALL", item_ids=["a"]), "Invalid work type"),
    ]
    for job, message in cases:
        with pytest.raises(BulkConfigError, match=message.replace("$", r"\$")):
            validate_job_config(job)


def test_cost_estimate_by_work_type():
    assert estimate_session_cost("ACCOUNT_METRICS", 10, 0.001) == (20, 0.02)
    assert estimate_session_cost("DETAILED_ANALYSIS", 10, 0.001) == (50, 0.05)


def test_create_session_rejects_estimate_over_limit(conn):
    orchestrator = _orchestrator(conn, FakeClient())
    job = BulkJobConfig(work_type="DETAILED_ANALYSIS", item_ids=["a", "b", "c"], cost_limit=0.01)
    with pytest.raises(BulkConfigError, match="exceeds cost limit"):
        orchestrator.create_session(job)


def test_successful_run_completes_and_notifies(conn):
    for item_id in ("a1", "a2", "a3"):
        upsert_item(conn, item_id, f"user_{item_id}")
    client = FakeClient()
    notifier = MemoryNotifier()
    sleep = SleepRecorder()
    orchestrator = _orchestrator(conn, client, notifier=notifier, sleep=sleep)

    result = orchestrator.create_and_execute(_job(["a1", "a2", "a3"], batch_size=2))

    assert result.success is True
    assert result.status == "COMPLETED"
    assert (result.successful, result.failed, result.skipped) == (3, 0, 0)
    assert result.request_units == 6
    assert result.cost == pytest.approx(0.006)
    assert client.calls == ["user_a1", "user_a2", "user_a3"]
    assert sleep.calls == [1.0, 1.0]
    assert get_item(conn, "a1").last_success_at is not None

    kinds = [message["kind"] for message in notifier.messages]
    assert kinds == [
        "state_change",
        "state_change",
        "progress",
        "cost",
        "progress",
        "cost",
        "state_change",
        "complete",
    ]
    assert [message["sequence"] for message in notifier.messages] == list(range(1, 9))
    assert notifier.of_kind("progress")[-1]["payload"]["progress"] == 100.0


def test_cost_overrun_halts_with_partial_totals(conn):
    session_id = create_session(
        conn,
        work_type="ACCOUNT_METRICS",
        item_ids=[f"i{n}" for n in range(6)],
        batch_size=1,
        cost_limit=10.0,
        priority="NORMAL",
        triggered_by="SYSTEM",
        trigger_source="MANUAL",
        max_concurrent_requests=3,
        estimated_units=12,
        estimated_cost=1.0,
    )
    client = FakeClient([0.5, 0.5, 0.51])
    result = _orchestrator(conn, client).execute_session(session_id)

    assert result.halted_reason == "cost_limit_exceeded"
    assert result.status == "CANCELLED"
    assert result.successful == 3
    assert result.cost == pytest.approx(1.51)
    assert len(client.calls) == 3
    assert get_session(conn, session_id).last_error.startswith("cost_limit_exceeded")


def test_backoff_retries_same_item(conn):
    client = FakeClient([RawFailure(kind="timeout", code="ETIMEDOUT")])
    sleep = SleepRecorder()
    result = _orchestrator(conn, client, sleep=sleep).create_and_execute(_job(["a1"]))

    assert result.status == "COMPLETED"
    assert result.successful == 1
    assert client.calls == ["a1", "a1"]
    assert len(sleep.calls) == 1
    assert 10.0 <= sleep.calls[0] <= 15.0
    assert get_session(conn, result.session_id).error_count == 1


def test_auth_failure_skips_item_and_continues(conn):
    client = FakeClient([RawFailure(kind="http", status=401)])
    result = _orchestrator(conn, client).create_and_execute(_job(["a1", "a2"]))

    assert result.status == "COMPLETED"
    assert (result.successful, result.failed, result.skipped) == (1, 0, 1)
    assert result.errors[0]["item_id"] == "a1"
    errors = list_session_errors(conn, result.session_id)
    assert [error["type"] for error in errors] == ["AUTHENTICATION_ERROR"]


def test_quota_error_cancels_session(conn):
    client = FakeClient([RawFailure(kind="http", status=402)])
    result = _orchestrator(conn, client).create_and_execute(_job(["a1", "a2", "a3"]))

    assert result.status == "CANCELLED"
    assert result.halted_reason == "session_cancelled"
    assert result.failed == 1
    assert client.calls == ["a1"]


def test_rate_limit_pauses_then_resumes_where_it_left_off(conn):
    client = FakeClient([RawFailure(kind="http", status=429)])
    orchestrator = _orchestrator(conn, client)
    first = orchestrator.create_and_execute(_job(["a1", "a2", "a3"]))

    assert first.status == "PAUSED"
    assert first.halted_reason == "session_paused"
    assert first.processed == 1

    second = orchestrator.execute_session(first.session_id)
    assert second.status == "COMPLETED"
    assert client.calls == ["a1", "a2", "a3"]
    assert (second.successful, second.failed) == (2, 1)


def test_batch_cooldown_after_rate_limit_worth_of_successes(conn):
    config = default_config()
    config = replace(config, upstream=replace(config.upstream, rate_limit_per_second=1))
    sleep = SleepRecorder()
    result = _orchestrator(conn, FakeClient(), sleep=sleep, config=config).create_and_execute(
        _job(["a1", "a2"], batch_size=1)
    )
    assert result.success is True
    assert sleep.calls == [2.0, 1.0]


def test_unexpected_error_fails_session(conn):
    orchestrator = _orchestrator(conn, FakeClient([RawFailure(kind="http", status=500)]))

    def explode(*args, **kwargs):
        raise RuntimeError("planner crashed")

    orchestrator.planner.handle = explode
    result = orchestrator.create_and_execute(_job(["a1"]))

    assert result.status == "FAILED"
    assert result.halted_reason == "system_error"
    assert result.errors[-1]["item_id"] == "SYSTEM"
    errors = list_session_errors(conn, result.session_id)
    assert errors[-1]["code"] == "SYSTEM"
    assert errors[-1]["severity"] == "CRITICAL"


def test_completed_session_cannot_execute_again(conn):
    orchestrator = _orchestrator(conn, FakeClient())
    result = orchestrator.create_and_execute(_job(["a1"]))
    with pytest.raises(InvalidTransitionError):
        orchestrator.execute_session(result.session_id)


def test_assess_risk_and_active_sessions(conn):
    orchestrator = _orchestrator(conn, FakeClient())
    orchestrator.create_session(_job(["a1"]))
    risk = orchestrator.assess_risk(_job(["a1", "a2"]))
    assert risk.risk_level in ("LOW", "MEDIUM", "HIGH", "EXTREME")
    assert risk.factors["work_type"] == "ACCOUNT_METRICS"
    assert orchestrator.active_sessions() == []
