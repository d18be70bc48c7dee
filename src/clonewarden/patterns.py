from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable

from .models import ErrorContext, ErrorPattern, PatternMatch, ScrapingError
from .utils import log_event, utc_now

TIME_WINDOWS = [
    ("5min", 5 * 60),
    ("30min", 30 * 60),
    ("2hour", 2 * 60 * 60),
    ("24hour", 24 * 60 * 60),
]

Task = Callable[[], None]


class InlineScheduler:
    def submit(self, task: Task) -> None:
        task()


class ManualScheduler:
    """Queues tasks until run_pending() is called. Duplicate tasks collapse."""

    def __init__(self) -> None:
        self._pending: list[Task] = []

    def submit(self, task: Task) -> None:
        if task not in self._pending:
            self._pending.append(task)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def run_pending(self) -> int:
        tasks, self._pending = self._pending, []
        for task in tasks:
            task()
        return len(tasks)


class ThreadScheduler:
    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="patterns")
        self._queued = threading.Event()

    def submit(self, task: Task) -> None:
        if self._queued.is_set():
            return
        self._queued.set()

        def _run() -> None:
            self._queued.clear()
            task()

        self._executor.submit(_run)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class ErrorPatternAnalyzer:
    def __init__(
        self,
        history_size: int = 10000,
        scheduler: InlineScheduler | ManualScheduler | ThreadScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._history: deque[ScrapingError] = deque(maxlen=history_size)
        self._patterns: dict[str, ErrorPattern] = {}
        self._scheduler = scheduler or InlineScheduler()
        self._clock = clock
        self._lock = threading.RLock()
        self._logger = logging.getLogger("clonewarden.patterns")

    def add_error(self, error: ScrapingError) -> None:
        with self._lock:
            self._history.appendleft(error)
        self._scheduler.submit(self.recompute_patterns)

    def history(self) -> list[ScrapingError]:
        with self._lock:
            return list(self._history)

    def patterns(self) -> list[ErrorPattern]:
        with self._lock:
            return list(self._patterns.values())

    def recompute_patterns(self) -> list[ErrorPattern]:
        now = self._clock()
        history = self.history()
        found: dict[str, ErrorPattern] = {}
        for name, seconds in TIME_WINDOWS:
            cutoff = now - timedelta(seconds=seconds)
            recent = [error for error in history if error.timestamp > cutoff]
            for pattern in _frequency_patterns(recent, name, seconds):
                found[pattern.pattern_id] = pattern
            for pattern in _item_patterns(recent, name, seconds):
                found[pattern.pattern_id] = pattern
            for pattern in _sequential_patterns(recent, name, seconds):
                found[pattern.pattern_id] = pattern
        with self._lock:
            self._patterns = found
        log_event(
            self._logger,
            logging.DEBUG,
            "patterns_recomputed",
            history=len(history),
            patterns=len(found),
        )
        return list(found.values())

    def matches_pattern(self, context: ErrorContext) -> PatternMatch:
        matched = []
        for pattern in self.patterns():
            if context.item_id and context.item_id in pattern.item_ids:
                matched.append(pattern)
            elif context.last_error_type and context.last_error_type in pattern.error_types:
                matched.append(pattern)
        risk = min(sum(pattern.confidence for pattern in matched), 1.0)
        return PatternMatch(matched=bool(matched), patterns=matched, risk_level=risk)

    def system_analytics(self) -> dict[str, object]:
        patterns = self.patterns()
        if any(pattern.predicted_impact == "CRITICAL" for pattern in patterns):
            health = "POOR"
        elif len(patterns) > 10:
            health = "FAIR"
        elif len(patterns) > 5:
            health = "GOOD"
        else:
            health = "EXCELLENT"
        by_type = Counter(error.type for error in self.history())
        return {
            "total_patterns": len(patterns),
            "history_size": sum(by_type.values()),
            "errors_by_type": dict(by_type),
            "critical_patterns": [
                pattern.pattern_id for pattern in patterns if pattern.predicted_impact == "CRITICAL"
            ],
            "system_health": health,
        }


def predicted_impact(error_type: str, count: int) -> str:
    if error_type == "QUOTA_EXCEEDED" or count > 15:
        return "CRITICAL"
    if error_type == "AUTHENTICATION_ERROR" or count > 10:
        return "HIGH"
    if count > 5:
        return "MEDIUM"
    return "LOW"


def suggested_mitigation(error_type: str, count: int) -> str:
    if error_type == "RATE_LIMIT":
        return "PREVENTIVE"
    if count > 10:
        return "PROACTIVE"
    return "REACTIVE"


def _frequency_patterns(errors: list[ScrapingError], window: str, seconds: int) -> list[ErrorPattern]:
    counts = Counter(error.type for error in errors)
    return [
        ErrorPattern(
            pattern_id=f"freq_{error_type}_{window}",
            error_types=[error_type],
            frequency=count,
            time_window=seconds,
            confidence=min(count / 20, 1.0),
            predicted_impact=predicted_impact(error_type, count),
            mitigation=suggested_mitigation(error_type, count),
        )
        for error_type, count in counts.items()
        if count >= 5
    ]


def _item_patterns(errors: list[ScrapingError], window: str, seconds: int) -> list[ErrorPattern]:
    by_item: dict[str, list[ScrapingError]] = {}
    for error in errors:
        if error.item_id:
            by_item.setdefault(error.item_id, []).append(error)
    patterns = []
    for item_id, item_errors in by_item.items():
        if len(item_errors) < 3:
            continue
        patterns.append(
            ErrorPattern(
                pattern_id=f"account_{item_id}_{window}",
                error_types=list(dict.fromkeys(error.type for error in item_errors)),
                frequency=len(item_errors),
                time_window=seconds,
                confidence=min(len(item_errors) / 10, 0.9),
                predicted_impact="HIGH",
                mitigation="PROACTIVE",
                item_ids=[item_id],
            )
        )
    return patterns


def _sequential_patterns(errors: list[ScrapingError], window: str, seconds: int) -> list[ErrorPattern]:
    sequences: Counter[tuple[str, str, str]] = Counter()
    for index in range(len(errors) - 2):
        sequences[(errors[index].type, errors[index + 1].type, errors[index + 2].type)] += 1
    return [
        ErrorPattern(
            pattern_id=f"seq_{'_'.join(types)}_{window}",
            error_types=list(types),
            frequency=count,
            time_window=seconds,
            confidence=min(count / 5, 0.8),
            predicted_impact="MEDIUM",
            mitigation="PREVENTIVE",
        )
        for types, count in sequences.items()
        if count >= 2
    ]
