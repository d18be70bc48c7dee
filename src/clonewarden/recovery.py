from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

from .classifier import RawFailure, classify_error
from .config import RecoveryConfig
from .health import AccountHealthMonitor
from .models import (
    AccountHealth,
    ErrorContext,
    ErrorPattern,
    RecoveryOutcome,
    RecoveryStrategy,
    ScrapingError,
)
from .patterns import ErrorPatternAnalyzer
from .utils import log_event

DEFAULT_RECOVERY = RecoveryConfig(
    max_backoff_seconds=120.0,
    max_pause_seconds=300.0,
    jitter_seconds=5.0,
    consecutive_error_limit=10,
    pattern_risk_threshold=0.7,
)


@dataclass(frozen=True)
class HandledFailure:
    error: ScrapingError
    strategy: RecoveryStrategy
    outcome: RecoveryOutcome
    patterns: list[ErrorPattern]
    health: AccountHealth | None


class RecoveryPlanner:
    def __init__(
        self,
        config: RecoveryConfig | None = None,
        analyzer: ErrorPatternAnalyzer | None = None,
        health_monitor: AccountHealthMonitor | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or DEFAULT_RECOVERY
        self.analyzer = analyzer
        self.health_monitor = health_monitor
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._logger = logging.getLogger("clonewarden.recovery")

    def base_strategy(self, error: ScrapingError, context: ErrorContext) -> RecoveryStrategy:
        cfg = self.config
        if error.severity == "CRITICAL":
            return RecoveryStrategy("CANCEL_SESSION", 0.0, f"Critical error: {error.message}")
        if error.type == "AUTHENTICATION_ERROR":
            return RecoveryStrategy("SKIP", 0.0, "Authentication failed - skipping item")
        if error.type == "RATE_LIMIT":
            base = error.suggested_delay or 60.0
            delay = min(base * 2 ** context.consecutive_errors, cfg.max_pause_seconds)
            return RecoveryStrategy("PAUSE_SESSION", delay, "Rate limit exceeded - pausing session")
        max_retries = error.max_retries or 3
        if error.retryable and context.attempt < max_retries and context.attempt < context.total_attempts:
            base = error.suggested_delay or 10.0
            delay = base * 2 ** (context.attempt - 1) + self._rng.uniform(0, cfg.jitter_seconds)
            delay = min(delay, cfg.max_backoff_seconds)
            return RecoveryStrategy(
                "BACKOFF",
                delay,
                f"Retrying after {round(delay)}s (attempt {context.attempt})",
                retry_count=context.attempt,
                max_retries=max_retries,
            )
        if context.consecutive_errors >= cfg.consecutive_error_limit:
            return RecoveryStrategy(
                "PAUSE_SESSION",
                cfg.max_pause_seconds,
                "Too many consecutive errors - pausing session for recovery",
            )
        return RecoveryStrategy(
            "SKIP", 0.0, f"Max retries exceeded or non-retryable error: {error.message}"
        )

    def plan(
        self,
        error: ScrapingError,
        context: ErrorContext,
        patterns: list[ErrorPattern] | None = None,
        risk_level: float = 0.0,
        health: AccountHealth | None = None,
    ) -> RecoveryStrategy:
        strategy = self.base_strategy(error, context)
        if patterns and risk_level > self.config.pattern_risk_threshold:
            strategy = self._apply_patterns(strategy, patterns)
        if (
            health is not None
            and health.recommended_action == "QUARANTINE"
            and strategy.strategy != "CANCEL_SESSION"
        ):
            strategy = RecoveryStrategy(
                "SKIP", 0.0, "Item quarantined due to poor health score"
            )
        return strategy

    def _apply_patterns(
        self, strategy: RecoveryStrategy, patterns: list[ErrorPattern]
    ) -> RecoveryStrategy:
        mitigations = {pattern.mitigation for pattern in patterns}
        if "PREVENTIVE" in mitigations:
            strategy = replace(
                strategy,
                delay=strategy.delay * 2,
                reason=f"{strategy.reason} (enhanced for pattern prevention)",
            )
        if "PROACTIVE" in mitigations and strategy.strategy == "BACKOFF":
            return RecoveryStrategy(
                "PAUSE_SESSION",
                self.config.max_pause_seconds,
                "Proactive session pause due to identified error patterns",
            )
        return strategy

    def execute(self, strategy: RecoveryStrategy, context: ErrorContext, sessions: Any) -> RecoveryOutcome:
        session_id = context.session_id
        try:
            if strategy.strategy in ("RETRY", "BACKOFF"):
                if strategy.delay:
                    self._sleep(strategy.delay)
                return RecoveryOutcome(True, strategy.reason, True)
            if strategy.strategy == "SKIP":
                if session_id:
                    sessions.record_skip(session_id)
                return RecoveryOutcome(True, strategy.reason, True)
            if strategy.strategy == "PAUSE_SESSION":
                if session_id:
                    sessions.pause(session_id, strategy.reason)
                log_event(
                    self._logger,
                    logging.WARNING,
                    "session_paused",
                    session_id=session_id,
                    pause_seconds=strategy.delay,
                    reason=strategy.reason,
                )
                return RecoveryOutcome(True, f"Session paused: {strategy.reason}", False)
            if strategy.strategy == "CANCEL_SESSION":
                if session_id:
                    sessions.cancel(session_id, strategy.reason)
                return RecoveryOutcome(True, f"Session cancelled: {strategy.reason}", False)
            return RecoveryOutcome(False, f"Unknown recovery strategy: {strategy.strategy}", False)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "recovery_failed",
                session_id=session_id,
                strategy=strategy.strategy,
                error=str(exc),
            )
            return RecoveryOutcome(False, f"Recovery strategy failed: {exc}", False)

    def handle(self, failure: RawFailure, context: ErrorContext, sessions: Any) -> HandledFailure:
        error = classify_error(failure, context)
        context = replace(context, last_error_type=error.type)
        patterns: list[ErrorPattern] = []
        risk_level = 0.0
        history: list[ScrapingError] = [error]
        if self.analyzer is not None:
            self.analyzer.add_error(error)
            match = self.analyzer.matches_pattern(context)
            patterns, risk_level = match.patterns, match.risk_level
            history = self.analyzer.history()
        health = None
        if self.health_monitor is not None and context.item_id:
            health = self.health_monitor.analyze(context.item_id, history)
        strategy = self.plan(error, context, patterns, risk_level, health)
        log_event(
            self._logger,
            logging.INFO,
            "recovery_planned",
            session_id=context.session_id,
            item_id=context.item_id,
            error_type=error.type,
            severity=error.severity,
            strategy=strategy.strategy,
            delay=round(strategy.delay, 2),
            attempt=context.attempt,
        )
        outcome = self.execute(strategy, context, sessions)
        return HandledFailure(error, strategy, outcome, patterns, health)
