from __future__ import annotations

import os
from datetime import datetime, tzinfo
from typing import Callable, Iterable

from .health import AccountHealthMonitor
from .models import ScrapingError, SessionRisk
from .utils import utc_now

UNHEALTHY_THRESHOLD = 50


def time_of_day_category(hour: int) -> str:
    if 9 <= hour <= 17:
        return "PEAK"
    if 6 <= hour <= 22:
        return "NORMAL"
    return "OFF_PEAK"


def system_load() -> float:
    try:
        load = os.getloadavg()[0] / (os.cpu_count() or 1)
    except (AttributeError, OSError):
        return 0.0
    return max(0.0, min(load, 1.0))


def risk_level_for(score: float) -> str:
    if score > 1.5:
        return "EXTREME"
    if score > 1.0:
        return "HIGH"
    if score > 0.5:
        return "MEDIUM"
    return "LOW"


class SessionRiskAssessor:
    def __init__(
        self,
        health_monitor: AccountHealthMonitor,
        clock: Callable[[], datetime] = utc_now,
        error_rate_lookup: Callable[[str], float] | None = None,
        concurrency_lookup: Callable[[], int] | None = None,
        load_probe: Callable[[], float] = system_load,
        tz: tzinfo | None = None,
    ) -> None:
        self._health = health_monitor
        self._clock = clock
        self._error_rate_lookup = error_rate_lookup
        self._concurrency_lookup = concurrency_lookup
        self._load_probe = load_probe
        # None means the host local zone
        self._tz = tz

    def assess(
        self,
        item_ids: list[str],
        work_type: str,
        history: Iterable[ScrapingError] = (),
    ) -> SessionRisk:
        healths = self._health.bulk_health(item_ids, history)
        mean_health = (
            sum(health.health_score for health in healths) / len(healths) if healths else 100.0
        )
        unhealthy = [health.item_id for health in healths if health.health_score < UNHEALTHY_THRESHOLD]
        error_rate = self._error_rate_lookup(work_type) if self._error_rate_lookup else 0.1
        time_of_day = time_of_day_category(self._clock().astimezone(self._tz).hour)
        concurrent = self._concurrency_lookup() if self._concurrency_lookup else 0
        load = max(0.0, min(float(self._load_probe()), 1.0))

        score = (100 - mean_health) * 0.01
        score += error_rate * 2
        if time_of_day == "PEAK":
            score += 0.2
        elif time_of_day == "OFF_PEAK":
            score -= 0.1
        if concurrent > 10:
            score += 0.5
        if concurrent > 5:
            score += 0.3
        score += load * 0.4

        recommendations = []
        if unhealthy:
            recommendations.append(
                f"Exclude {len(unhealthy)} unhealthy items (health score below {UNHEALTHY_THRESHOLD})"
            )
        if time_of_day == "PEAK":
            recommendations.append("Avoid peak hours (09:00-17:59) to reduce rate limiting")
        if load > 0.8:
            recommendations.append("Reduce system load before starting the session")
        if concurrent > 8:
            recommendations.append("Wait for running sessions to finish before starting another")

        level = risk_level_for(score)
        return SessionRisk(
            risk_level=level,
            risk_score=round(score, 4),
            factors={
                "average_health": round(mean_health, 2),
                "unhealthy_items": unhealthy,
                "historical_error_rate": error_rate,
                "time_of_day": time_of_day,
                "concurrent_sessions": concurrent,
                "system_load": load,
                "work_type": work_type,
            },
            recommendations=recommendations,
            should_proceed=level != "EXTREME",
        )
