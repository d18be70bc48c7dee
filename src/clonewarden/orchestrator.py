from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from .classifier import system_error
from .client import ProfileClient, normalize_failure
from .config import Config, default_config
from .health import AccountHealthMonitor
from .models import (
    ACTIVE_SESSION_STATUSES,
    PRIORITIES,
    TRIGGER_SOURCES,
    TRIGGERED_BY,
    WORK_TYPES,
    ErrorContext,
    Session,
    SessionRisk,
)
from .notify import Notifier
from .patterns import ErrorPatternAnalyzer
from .recovery import RecoveryPlanner
from .risk import SessionRiskAssessor
from .sessions import InvalidTransitionError, SessionStateManager
from .storage import (
    count_active_sessions,
    create_session,
    get_item,
    get_item_last_success,
    historical_error_rate,
    list_sessions,
    mark_item_success,
    record_session_error,
)
from .utils import log_event, utc_now

UNITS_PER_ITEM = {"DETAILED_ANALYSIS": 5}
DEFAULT_UNITS_PER_ITEM = 2


class BulkConfigError(ValueError):
    pass


@dataclass(frozen=True)
class BulkJobConfig:
    work_type: str
    item_ids: list[str]
    batch_size: int = 5
    max_concurrent_requests: int = 3
    cost_limit: float = 10.0
    priority: str = "NORMAL"
    triggered_by: str = "SYSTEM"
    trigger_source: str = "MANUAL"


@dataclass(frozen=True)
class BulkResult:
    session_id: str
    success: bool
    status: str
    total_items: int
    processed: int
    successful: int
    failed: int
    skipped: int
    request_units: int
    cost: float
    duration_seconds: float
    halted_reason: str | None = None
    errors: list[dict[str, object]] = field(default_factory=list)


def estimate_session_cost(work_type: str, item_count: int, cost_per_unit: float) -> tuple[int, float]:
    units = UNITS_PER_ITEM.get(work_type, DEFAULT_UNITS_PER_ITEM) * item_count
    return units, round(units * cost_per_unit, 6)


def validate_job_config(job: BulkJobConfig) -> None:
    if not job.item_ids:
        raise BulkConfigError("Target items list cannot be empty")
    if not 1 <= job.batch_size <= 50:
        raise BulkConfigError("Batch size must be between 1 and 50")
    if not 1 <= job.max_concurrent_requests <= 10:
        raise BulkConfigError("Max concurrent requests must be between 1 and 10")
    if not 0.01 <= job.cost_limit <= 100.0:
        raise BulkConfigError("Cost limit must be between $0.01 and $100.00")
    if job.work_type not in WORK_TYPES:
        raise BulkConfigError(f"Invalid work type. Must be one of: {', '.join(WORK_TYPES)}")
    if job.priority not in PRIORITIES:
        raise BulkConfigError(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
    if job.triggered_by not in TRIGGERED_BY:
        raise BulkConfigError(f"Invalid trigger. Must be one of: {', '.join(TRIGGERED_BY)}")
    if job.trigger_source not in TRIGGER_SOURCES:
        raise BulkConfigError(
            f"Invalid trigger source. Must be one of: {', '.join(TRIGGER_SOURCES)}"
        )


class BulkOrchestrator:
    def __init__(
        self,
        conn: Any,
        config: Config | None = None,
        client: Any | None = None,
        notifier: Notifier | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
        scheduler: Any | None = None,
        analyzer: ErrorPatternAnalyzer | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.conn = conn
        self.config = config or default_config()
        self.notifier = notifier
        self._sleep = sleep
        self._monotonic = monotonic
        self._logger = logging.getLogger("clonewarden.orchestrator")
        rng = rng or random.Random()
        self.sessions = SessionStateManager(conn, notifier)
        self.analyzer = analyzer or ErrorPatternAnalyzer(
            history_size=self.config.patterns.history_size,
            scheduler=scheduler,
            clock=clock,
        )
        self.health = AccountHealthMonitor(
            cache_seconds=self.config.health.cache_minutes * 60,
            clock=clock,
            last_success_lookup=lambda item_id: get_item_last_success(conn, item_id),
        )
        self.planner = RecoveryPlanner(
            config=self.config.recovery,
            analyzer=self.analyzer,
            health_monitor=self.health,
            rng=rng,
            sleep=sleep,
        )
        self.risk = SessionRiskAssessor(
            self.health,
            clock=clock,
            error_rate_lookup=lambda work_type: historical_error_rate(conn, work_type),
            concurrency_lookup=lambda: count_active_sessions(conn),
        )
        self.client = client or ProfileClient(self.config.upstream, rng=rng, sleep=sleep)

    def create_session(self, job: BulkJobConfig) -> str:
        validate_job_config(job)
        units, cost = estimate_session_cost(
            job.work_type, len(job.item_ids), self.config.upstream.cost_per_unit
        )
        if cost > job.cost_limit:
            raise BulkConfigError(
                f"Estimated cost ${cost:.2f} exceeds cost limit ${job.cost_limit:.2f}"
            )
        session_id = create_session(
            self.conn,
            work_type=job.work_type,
            item_ids=list(job.item_ids),
            batch_size=job.batch_size,
            cost_limit=job.cost_limit,
            priority=job.priority,
            triggered_by=job.triggered_by,
            trigger_source=job.trigger_source,
            max_concurrent_requests=job.max_concurrent_requests,
            estimated_units=units,
            estimated_cost=cost,
        )
        log_event(
            self._logger,
            logging.INFO,
            "session_created",
            session_id=session_id,
            work_type=job.work_type,
            items=len(job.item_ids),
            estimated_cost=cost,
        )
        return session_id

    def create_and_execute(self, job: BulkJobConfig) -> BulkResult:
        return self.execute_session(self.create_session(job))

    def assess_risk(self, job: BulkJobConfig) -> SessionRisk:
        return self.risk.assess(list(job.item_ids), job.work_type, self.analyzer.history())

    def active_sessions(self) -> list[Session]:
        sessions: list[Session] = []
        for status in ACTIVE_SESSION_STATUSES:
            sessions.extend(list_sessions(self.conn, status=status))
        return sessions

    def system_analytics(self) -> dict[str, object]:
        return self.analyzer.system_analytics()

    def execute_session(self, session_id: str) -> BulkResult:
        started = self._monotonic()
        session, resume_from = self._prepare(session_id)
        run = _RunState.from_session(session)
        log_event(
            self._logger,
            logging.INFO,
            "session_execute",
            session_id=session_id,
            items=session.total_items,
            resume_from=resume_from,
        )
        try:
            self._run_batches(session, resume_from, run)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "session_execute_error",
                session_id=session_id,
                error=str(exc),
            )
            error = system_error(str(exc), session_id)
            run.errors.append(
                {"item_id": "SYSTEM", "error": str(exc), "timestamp": error.timestamp.isoformat()}
            )
            run.halted_reason = "system_error"
            try:
                record_session_error(self.conn, error)
                self.sessions.fail(session_id, str(exc))
            except Exception as inner:  # noqa: BLE001
                log_event(
                    self._logger,
                    logging.ERROR,
                    "session_fail_error",
                    session_id=session_id,
                    error=str(inner),
                )
        return self._finish(session_id, run, self._monotonic() - started)

    def _prepare(self, session_id: str) -> tuple[Session, int]:
        session = self.sessions.get(session_id)
        status = session.status
        if status in ("PENDING", "IDLE", "FAILED", "CANCELLED", "RATE_LIMITED"):
            self.sessions.start(session_id)
            return self.sessions.begin(session_id), 0
        if status == "INITIALIZING":
            return self.sessions.begin(session_id), 0
        if status == "PAUSED":
            resumed = self.sessions.resume(session_id)
            return resumed, resumed.processed_count
        raise InvalidTransitionError(status, "EXECUTE")

    def _run_batches(self, session: Session, resume_from: int, run: "_RunState") -> None:
        cfg = self.config
        remaining = session.item_ids[resume_from:]
        batches = [
            remaining[index:index + session.batch_size]
            for index in range(0, len(remaining), session.batch_size)
        ]
        previous_successes = 0
        first_item = True
        for batch_index, batch in enumerate(batches):
            if batch_index > 0 and previous_successes >= cfg.upstream.rate_limit_per_second:
                log_event(
                    self._logger,
                    logging.INFO,
                    "batch_cooldown",
                    session_id=session.id,
                    seconds=cfg.bulk.batch_cooldown_seconds,
                )
                self._sleep(cfg.bulk.batch_cooldown_seconds)
            batch_successes = 0
            stop = False
            for item_id in batch:
                status = self.sessions.get(session.id).status
                if status != "RUNNING":
                    run.halted_reason = f"session_{status.lower()}"
                    stop = True
                    break
                if not first_item:
                    self._sleep(cfg.bulk.inter_item_delay_seconds)
                first_item = False
                succeeded, should_continue = self._process_item(session, item_id, run)
                if succeeded:
                    batch_successes += 1
                if not should_continue:
                    stop = True
                    break
            previous_successes = batch_successes
            self._persist_batch(session, run, batch_index, len(batches))
            if stop:
                if run.halted_reason is None:
                    status = self.sessions.get(session.id).status
                    run.halted_reason = f"session_{status.lower()}"
                break
            if session.estimated_cost > 0 and run.cost >= cfg.bulk.cost_halt_multiplier * session.estimated_cost:
                run.halted_reason = "cost_limit_exceeded"
                log_event(
                    self._logger,
                    logging.WARNING,
                    "session_cost_halt",
                    session_id=session.id,
                    actual_cost=round(run.cost, 6),
                    estimated_cost=session.estimated_cost,
                )
                self.sessions.cancel(
                    session.id,
                    f"cost_limit_exceeded: actual ${run.cost:.2f} vs estimated ${session.estimated_cost:.2f}",
                )
                return
        if run.halted_reason is None and self.sessions.get(session.id).status == "RUNNING":
            self.sessions.complete(session.id)

    def _process_item(self, session: Session, item_id: str, run: "_RunState") -> tuple[bool, bool]:
        item = get_item(self.conn, item_id)
        identifier = item.username if item else item_id
        attempt = 1
        while True:
            try:
                result = self.client.fetch_profile(identifier, {"work_type": session.work_type})
            except Exception as exc:  # noqa: BLE001
                context = ErrorContext(
                    session_id=session.id,
                    item_id=item_id,
                    attempt=attempt,
                    consecutive_errors=run.consecutive_errors,
                    total_attempts=self.config.bulk.total_attempts,
                )
                handled = self.planner.handle(normalize_failure(exc), context, self.sessions)
                record_session_error(self.conn, handled.error)
                run.consecutive_errors += 1
                run.error_count += 1
                run.last_error = handled.error.message
                if handled.strategy.strategy in ("BACKOFF", "RETRY") and handled.outcome.should_continue:
                    attempt += 1
                    continue
                if handled.strategy.strategy == "SKIP" and handled.outcome.success:
                    run.skipped += 1
                else:
                    run.failed += 1
                run.errors.append(
                    {
                        "item_id": item_id,
                        "error": handled.error.message,
                        "timestamp": handled.error.timestamp.isoformat(),
                    }
                )
                return False, handled.outcome.should_continue
            run.completed += 1
            run.request_units += int(result.request_units)
            run.cost += float(result.cost)
            run.consecutive_errors = 0
            mark_item_success(self.conn, item_id)
            self.health.invalidate(item_id)
            return True, True

    def _persist_batch(self, session: Session, run: "_RunState", batch_index: int, batches: int) -> None:
        processed = run.completed + run.failed + run.skipped
        total = session.total_items
        progress = round(min(processed / total, 1.0) * 100, 2) if total else 100.0
        self.sessions.update_progress(
            session.id,
            {
                "completed_count": run.completed,
                "failed_count": run.failed,
                "request_units": run.request_units,
                "actual_cost": round(run.cost, 6),
                "error_count": run.error_count,
                "last_error": run.last_error,
                "progress": progress,
            },
        )
        self._notify(
            "progress",
            session.id,
            {
                "processed": processed,
                "total": total,
                "successful": run.completed,
                "failed": run.failed,
                "skipped": run.skipped,
                "progress": progress,
                "batch": batch_index + 1,
                "batches": batches,
            },
        )
        self._notify(
            "cost",
            session.id,
            {
                "request_units": run.request_units,
                "actual_cost": round(run.cost, 6),
                "estimated_cost": session.estimated_cost,
                "budget_used": round(run.cost / session.cost_limit * 100, 2) if session.cost_limit else 0.0,
                "budget_remaining": round(session.cost_limit - run.cost, 6),
            },
        )

    def _finish(self, session_id: str, run: "_RunState", duration: float) -> BulkResult:
        session = self.sessions.get(session_id)
        result = BulkResult(
            session_id=session_id,
            success=session.status == "COMPLETED",
            status=session.status,
            total_items=session.total_items,
            processed=session.processed_count,
            successful=session.completed_count,
            failed=session.failed_count,
            skipped=session.skipped_count,
            request_units=session.request_units,
            cost=session.actual_cost,
            duration_seconds=round(duration, 3),
            halted_reason=run.halted_reason,
            errors=list(run.errors),
        )
        self._notify(
            "complete",
            session_id,
            {
                "status": result.status,
                "successful": result.successful,
                "failed": result.failed,
                "skipped": result.skipped,
                "cost": result.cost,
                "duration_seconds": result.duration_seconds,
                "halted_reason": result.halted_reason,
            },
        )
        log_event(
            self._logger,
            logging.INFO,
            "session_finished",
            session_id=session_id,
            status=result.status,
            successful=result.successful,
            failed=result.failed,
            skipped=result.skipped,
            cost=result.cost,
            halted_reason=result.halted_reason,
        )
        return result

    def _notify(self, kind: str, session_id: str, payload: dict[str, object]) -> None:
        if self.notifier is None:
            return
        try:
            getattr(self.notifier, kind)(session_id, payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.WARNING,
                "notify_failed",
                session_id=session_id,
                kind=kind,
                error=str(exc),
            )


@dataclass
class _RunState:
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    request_units: int = 0
    cost: float = 0.0
    error_count: int = 0
    last_error: str | None = None
    consecutive_errors: int = 0
    halted_reason: str | None = None
    errors: list[dict[str, object]] = field(default_factory=list)

    @classmethod
    def from_session(cls, session: Session) -> "_RunState":
        return cls(
            completed=session.completed_count,
            failed=session.failed_count,
            skipped=session.skipped_count,
            request_units=session.request_units,
            cost=session.actual_cost,
            error_count=session.error_count,
            last_error=session.last_error,
        )
