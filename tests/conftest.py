from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from clonewarden.classifier import RawFailure
from clonewarden.client import ProfileResult, UpstreamFailure
from clonewarden.models import ScrapingError
from clonewarden.storage import init_db

NOW = datetime(2025, 3, 4, 20, 0, tzinfo=timezone.utc)


@pytest.fixture
def conn(tmp_path):
    db = init_db(str(tmp_path / "state.sqlite3"))
    yield db
    db.close()


def make_error(
    error_type: str = "RATE_LIMIT",
    severity: str = "MEDIUM",
    item_id: str | None = None,
    minutes_ago: float = 1,
    session_id: str | None = "s1",
) -> ScrapingError:
    return ScrapingError(
        type=error_type,
        severity=severity,
        code="TEST",
        message=f"{error_type} for test",
        timestamp=NOW - timedelta(minutes=minutes_ago),
        session_id=session_id,
        item_id=item_id,
        retryable=True,
    )


class FakeClient:
    """Scripted upstream: each call pops the next outcome, defaulting to success."""

    def __init__(self, outcomes=None, cost: float = 0.002, units: int = 2) -> None:
        self.outcomes = list(outcomes or [])
        self.cost = cost
        self.units = units
        self.calls: list[str] = []

    def fetch_profile(self, identifier, options=None):
        self.calls.append(identifier)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, RawFailure):
            raise UpstreamFailure(outcome)
        if isinstance(outcome, Exception):
            raise outcome
        cost = outcome if isinstance(outcome, float) else self.cost
        return ProfileResult(data={"username": identifier}, request_units=self.units, cost=cost)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
