from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Iterable

from .models import AccountHealth, ScrapingError
from .utils import parse_iso, utc_now

LastSuccessLookup = Callable[[str], "datetime | str | None"]


class AccountHealthMonitor:
    """Scores item reliability from its recent error history.

    History is expected newest first, as kept by ErrorPatternAnalyzer.
    """

    def __init__(
        self,
        cache_seconds: int = 30 * 60,
        clock: Callable[[], datetime] = utc_now,
        last_success_lookup: LastSuccessLookup | None = None,
    ) -> None:
        self._cache: dict[str, AccountHealth] = {}
        self._cache_seconds = cache_seconds
        self._clock = clock
        self._last_success_lookup = last_success_lookup
        self._lock = threading.Lock()

    def analyze(self, item_id: str, history: Iterable[ScrapingError]) -> AccountHealth:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(item_id)
        if cached and (now - cached.last_analyzed).total_seconds() < self._cache_seconds:
            return cached

        history = list(history)
        cutoff = now - timedelta(hours=24)
        item_errors = [error for error in history if error.item_id == item_id]
        last_24h = [error for error in item_errors if error.timestamp > cutoff]

        consecutive = consecutive_failures(item_errors)
        error_rate = len(last_24h) / 24 if last_24h else 0.0
        suspicious = is_suspicious(last_24h)
        rate_limits = [error.timestamp for error in last_24h if error.type == "RATE_LIMIT"]
        last_success = self._last_success(item_id)

        score = 100.0
        score -= consecutive * 5
        score -= error_rate * 10
        score -= 20 if suspicious else 0
        score -= len(rate_limits) * 2
        if last_success is not None:
            score -= max((now - last_success).total_seconds(), 0.0) / 86400
        score = max(0.0, min(100.0, score))

        probability = next_error_probability(consecutive, error_rate, score)
        health = AccountHealth(
            item_id=item_id,
            health_score=score,
            consecutive_failures=consecutive,
            error_rate=error_rate,
            last_success_at=last_success,
            suspicious_activity=suspicious,
            rate_limit_timestamps=rate_limits,
            next_error_probability=probability,
            recommended_action=recommended_action(score, probability),
            confidence=min(len(history) / 100, 0.95),
            last_analyzed=now,
        )
        with self._lock:
            self._cache[item_id] = health
        return health

    def bulk_health(self, item_ids: Iterable[str], history: Iterable[ScrapingError]) -> list[AccountHealth]:
        history = list(history)
        return [self.analyze(item_id, history) for item_id in item_ids]

    def invalidate(self, item_id: str | None = None) -> None:
        with self._lock:
            if item_id is None:
                self._cache.clear()
            else:
                self._cache.pop(item_id, None)

    def _last_success(self, item_id: str) -> datetime | None:
        if self._last_success_lookup is None:
            return None
        value = self._last_success_lookup(item_id)
        if isinstance(value, str):
            return parse_iso(value)
        return value


def consecutive_failures(item_errors: list[ScrapingError]) -> int:
    count = 0
    for error in item_errors:
        if error.severity not in ("HIGH", "CRITICAL"):
            break
        count += 1
    return count


def is_suspicious(errors: list[ScrapingError]) -> bool:
    auth = sum(1 for error in errors if error.type == "AUTHENTICATION_ERROR")
    rate_limits = sum(1 for error in errors if error.type == "RATE_LIMIT")
    return auth > 3 or rate_limits > 10


def next_error_probability(consecutive: int, error_rate: float, score: float) -> float:
    probability = min(consecutive * 0.1, 0.5)
    probability += min(error_rate * 0.05, 0.3)
    probability += min((100 - score) * 0.002, 0.2)
    return max(0.0, min(probability, 0.95))


def recommended_action(score: float, probability: float) -> str:
    if score < 20 or probability > 0.8:
        return "QUARANTINE"
    if score < 40 or probability > 0.6:
        return "INVESTIGATE"
    if score < 70 or probability > 0.4:
        return "PAUSE"
    return "CONTINUE"
