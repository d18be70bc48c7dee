from __future__ import annotations

import logging
from typing import Any, Callable

from .models import Session
from .notify import Notifier
from .storage import (
    get_session,
    increment_skipped,
    record_session_event,
    transition_session,
    update_session_progress,
)
from .utils import log_event, utc_now_iso

PUBLIC_ACTIONS = ["START", "PAUSE", "RESUME", "STOP", "RETRY"]
INTERNAL_ACTIONS = ["BEGIN", "COMPLETE", "FAIL"]

_RESTARTABLE = {"RETRY": "PENDING", "START": "INITIALIZING"}

TRANSITIONS: dict[str, dict[str, str]] = {
    "PENDING": {"START": "INITIALIZING"},
    "IDLE": {"START": "INITIALIZING"},
    "INITIALIZING": {"STOP": "CANCELLED", "BEGIN": "RUNNING", "FAIL": "FAILED"},
    "RUNNING": {
        "PAUSE": "PAUSED",
        "STOP": "CANCELLED",
        "COMPLETE": "COMPLETED",
        "FAIL": "FAILED",
    },
    "PAUSED": {"RESUME": "RUNNING", "STOP": "CANCELLED", "FAIL": "FAILED"},
    "COMPLETED": {},
    "FAILED": dict(_RESTARTABLE),
    "CANCELLED": dict(_RESTARTABLE),
    "RATE_LIMITED": dict(_RESTARTABLE),
}

_ZERO_PROGRESS = {
    "completed_count": 0,
    "failed_count": 0,
    "skipped_count": 0,
    "request_units": 0,
    "actual_cost": 0.0,
    "progress": 0.0,
}


class SessionError(RuntimeError):
    pass


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class InvalidTransitionError(SessionError):
    def __init__(self, status: str, action: str) -> None:
        super().__init__(f"Cannot {action.lower()} session in {status} status")
        self.status = status
        self.action = action


class UnknownActionError(SessionError):
    def __init__(self, action: str) -> None:
        super().__init__(
            f"Invalid action: {action}. Must be one of: {', '.join(PUBLIC_ACTIONS)}"
        )
        self.action = action


def allowed_actions(status: str, include_internal: bool = False) -> list[str]:
    actions = list(TRANSITIONS.get(status, {}))
    if include_internal:
        return actions
    return [action for action in actions if action in PUBLIC_ACTIONS]


class SessionStateManager:
    """Single authority for session lifecycle changes."""

    def __init__(
        self,
        conn: Any,
        notifier: Notifier | None = None,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._conn = conn
        self._notifier = notifier
        self._clock = clock
        self._logger = logging.getLogger("clonewarden.sessions")

    def get(self, session_id: str) -> Session:
        session = get_session(self._conn, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def control(self, session_id: str, action: str) -> dict[str, object]:
        normalized = (action or "").strip().upper()
        if normalized not in PUBLIC_ACTIONS:
            raise UnknownActionError(action)
        previous = self.get(session_id).status
        updated = self.transition(session_id, normalized)
        return {
            "session_id": session_id,
            "action": normalized,
            "previous_status": previous,
            "new_status": updated.status,
        }

    def transition(self, session_id: str, action: str, reason: str | None = None) -> Session:
        session = self.get(session_id)
        target = TRANSITIONS.get(session.status, {}).get(action)
        if target is None:
            raise InvalidTransitionError(session.status, action)
        fields = self._fields_for(action, reason)
        if not transition_session(self._conn, session_id, session.status, target, fields):
            current = self.get(session_id)
            raise InvalidTransitionError(current.status, action)
        record_session_event(self._conn, session_id, action, session.status, target, reason)
        log_event(
            self._logger,
            logging.INFO,
            "session_transition",
            session_id=session_id,
            action=action,
            from_status=session.status,
            to_status=target,
            reason=reason,
        )
        self._notify(
            session_id,
            {"action": action, "from": session.status, "to": target, "reason": reason},
        )
        return self.get(session_id)

    def _fields_for(self, action: str, reason: str | None) -> dict[str, object]:
        now = self._clock()
        if action == "START":
            return {**_ZERO_PROGRESS, "started_at": now, "ended_at": None}
        if action == "RETRY":
            return {
                **_ZERO_PROGRESS,
                "error_count": 0,
                "last_error": None,
                "started_at": None,
                "ended_at": None,
            }
        if action == "COMPLETE":
            return {"ended_at": now, "progress": 100.0}
        if action in ("STOP", "FAIL"):
            fields: dict[str, object] = {"ended_at": now}
            if reason:
                fields["last_error"] = reason
            return fields
        return {}

    def start(self, session_id: str) -> Session:
        return self.transition(session_id, "START")

    def begin(self, session_id: str) -> Session:
        return self.transition(session_id, "BEGIN")

    def pause(self, session_id: str, reason: str | None = None) -> Session:
        return self.transition(session_id, "PAUSE", reason)

    def resume(self, session_id: str) -> Session:
        return self.transition(session_id, "RESUME")

    def cancel(self, session_id: str, reason: str | None = None) -> Session:
        return self.transition(session_id, "STOP", reason)

    def retry(self, session_id: str) -> Session:
        return self.transition(session_id, "RETRY")

    def complete(self, session_id: str) -> Session:
        return self.transition(session_id, "COMPLETE")

    def fail(self, session_id: str, reason: str) -> Session:
        return self.transition(session_id, "FAIL", reason)

    def record_skip(self, session_id: str) -> None:
        increment_skipped(self._conn, session_id)

    def update_progress(self, session_id: str, counters: dict[str, object]) -> Session:
        session = self.get(session_id)
        counters = dict(counters)
        if "progress" not in counters and session.total_items:
            processed = sum(
                int(counters.get(key, getattr(session, key)))
                for key in ("completed_count", "failed_count", "skipped_count")
            )
            counters["progress"] = round(min(processed / session.total_items, 1.0) * 100, 2)
        update_session_progress(self._conn, session_id, counters)
        return self.get(session_id)

    def _notify(self, session_id: str, payload: dict[str, object]) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.state_change(session_id, payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.WARNING,
                "notify_failed",
                session_id=session_id,
                kind="state_change",
                error=str(exc),
            )
