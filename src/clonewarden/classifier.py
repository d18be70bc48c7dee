from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .models import ErrorContext, ScrapingError
from .utils import utc_now

FAILURE_KINDS = ["http", "timeout", "network", "other"]

TIMEOUT_CODES = {"ECONNRESET", "ETIMEDOUT"}
CONNECT_CODES = {"ENOTFOUND", "ECONNREFUSED"}


@dataclass(frozen=True)
class RawFailure:
    """Normalized upstream failure; built only by the client adapters."""

    kind: str
    status: int | None = None
    code: str | None = None
    message: str = ""

    @property
    def lowered(self) -> str:
        return (self.message or "").lower()


def classify_error(
    failure: RawFailure,
    context: ErrorContext | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> ScrapingError:
    session_id = context.session_id if context else None
    item_id = context.item_id if context else None
    status = failure.status
    code = (failure.code or "").upper()
    message = failure.lowered

    def build(
        error_type: str,
        severity: str,
        error_code: object,
        text: str,
        retryable: bool,
        delay: float | None = None,
        max_retries: int | None = None,
    ) -> ScrapingError:
        return ScrapingError(
            type=error_type,
            severity=severity,
            code=str(error_code),
            message=text,
            timestamp=clock(),
            session_id=session_id,
            item_id=item_id,
            retryable=retryable,
            suggested_delay=delay,
            max_retries=max_retries,
        )

    if status == 429 or "rate limit" in message or code == "RATE_LIMITED":
        return build(
            "RATE_LIMIT",
            "MEDIUM",
            status or 429,
            "Rate limit exceeded - requests too frequent",
            True,
            60.0,
            5,
        )
    if status in (401, 403) or "unauthorized" in message:
        return build(
            "AUTHENTICATION_ERROR",
            "HIGH",
            status or 401,
            "Authentication failed - invalid or expired credentials",
            False,
            max_retries=0,
        )
    if status == 402 or "quota" in message or "budget" in message:
        return build(
            "QUOTA_EXCEEDED",
            "CRITICAL",
            status or 402,
            "API quota or budget limit exceeded",
            False,
            max_retries=0,
        )
    if code in TIMEOUT_CODES or failure.kind == "timeout" or "timeout" in message or "timed out" in message:
        return build(
            "TIMEOUT_ERROR",
            "MEDIUM",
            code or "TIMEOUT",
            "Request timed out - network connectivity issue",
            True,
            10.0,
            3,
        )
    if code in CONNECT_CODES or failure.kind == "network" or (status is not None and status >= 500):
        return build(
            "NETWORK_ERROR",
            "MEDIUM",
            status or code or "NETWORK",
            "Network error - server unavailable or connection failed",
            True,
            30.0,
            5,
        )
    if status is not None and 400 <= status < 500:
        retryable = status in (408, 409)
        return build(
            "API_ERROR",
            "HIGH",
            status,
            f"API error: {failure.message or 'Invalid request'}",
            retryable,
            5.0 if status == 409 else None,
            3 if retryable else 0,
        )
    return build(
        "UNKNOWN_ERROR",
        "MEDIUM",
        status or code or "UNKNOWN",
        failure.message or "An unknown error occurred",
        True,
        15.0,
        2,
    )


def system_error(message: str, session_id: str | None, clock: Callable[[], datetime] = utc_now) -> ScrapingError:
    return ScrapingError(
        type="UNKNOWN_ERROR",
        severity="CRITICAL",
        code="SYSTEM",
        message=message,
        timestamp=clock(),
        session_id=session_id,
        item_id=None,
        retryable=False,
        max_retries=0,
    )
