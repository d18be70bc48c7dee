from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

WORK_TYPES = ["ACCOUNT_METRICS", "DETAILED_ANALYSIS", "FOLLOWERS_ANALYSIS"]

SESSION_STATUSES = [
    "PENDING",
    "IDLE",
    "INITIALIZING",
    "RUNNING",
    "PAUSED",
    "COMPLETED",
    "FAILED",
    "CANCELLED",
    "RATE_LIMITED",
]
ACTIVE_SESSION_STATUSES = ["INITIALIZING", "RUNNING", "PAUSED"]
FINISHED_SESSION_STATUSES = ["COMPLETED", "FAILED", "CANCELLED"]

PRIORITIES = ["LOW", "NORMAL", "HIGH"]
TRIGGERED_BY = ["USER", "SYSTEM", "SCHEDULE"]
TRIGGER_SOURCES = ["MANUAL", "SCHEDULED", "API"]

ERROR_TYPES = [
    "RATE_LIMIT",
    "AUTHENTICATION_ERROR",
    "QUOTA_EXCEEDED",
    "TIMEOUT_ERROR",
    "NETWORK_ERROR",
    "API_ERROR",
    "INVALID_REQUEST",
    "UNKNOWN_ERROR",
]
SEVERITIES = ["LOW", "MEDIUM", "HIGH", "CRITICAL"]

RECOVERY_STRATEGIES = ["RETRY", "BACKOFF", "SKIP", "PAUSE_SESSION", "CANCEL_SESSION"]
HEALTH_ACTIONS = ["CONTINUE", "PAUSE", "INVESTIGATE", "QUARANTINE"]
IMPACT_LEVELS = ["LOW", "MEDIUM", "HIGH", "CRITICAL"]
MITIGATIONS = ["REACTIVE", "PREVENTIVE", "PROACTIVE"]
RISK_LEVELS = ["LOW", "MEDIUM", "HIGH", "EXTREME"]

SLOT_STATUSES = ["Available", "Assigned", "LoggedIn", "Broken", "Maintenance"]
ITEM_STATUSES = ["Unused", "Assigned", "LoggedIn", "Banned", "Critical"]


@dataclass(frozen=True)
class Session:
    id: str
    work_type: str
    status: str
    item_ids: list[str]
    batch_size: int
    cost_limit: float
    priority: str
    triggered_by: str
    trigger_source: str
    max_concurrent_requests: int
    completed_count: int
    failed_count: int
    skipped_count: int
    request_units: int
    actual_cost: float
    error_count: int
    last_error: str | None
    progress: float
    estimated_units: int
    estimated_cost: float
    created_at: str
    started_at: str | None
    ended_at: str | None
    updated_at: str

    @property
    def total_items(self) -> int:
        return len(self.item_ids)

    @property
    def processed_count(self) -> int:
        return self.completed_count + self.failed_count + self.skipped_count


@dataclass(frozen=True)
class Item:
    id: str
    username: str
    status: str
    assigned_device_id: str | None
    assigned_slot_number: int | None
    assigned_at: str | None
    last_success_at: str | None


@dataclass(frozen=True)
class Slot:
    device_id: str
    slot_number: int
    status: str
    current_item_id: str | None
    health: str
    device_name: str | None = None
    package_name: str | None = None


@dataclass(frozen=True)
class Assignment:
    item_id: str
    device_id: str
    slot_number: int


@dataclass(frozen=True)
class AllocationPlan:
    assignments: list[Assignment]
    requested: int
    shortfall: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScrapingError:
    type: str
    severity: str
    code: str
    message: str
    timestamp: datetime
    session_id: str | None
    item_id: str | None
    retryable: bool
    suggested_delay: float | None = None
    max_retries: int | None = None


@dataclass(frozen=True)
class ErrorContext:
    session_id: str | None
    item_id: str | None = None
    attempt: int = 1
    consecutive_errors: int = 0
    total_attempts: int = 5
    last_error_type: str | None = None


@dataclass(frozen=True)
class RecoveryStrategy:
    strategy: str
    delay: float
    reason: str
    retry_count: int = 0
    max_retries: int = 0


@dataclass(frozen=True)
class RecoveryOutcome:
    success: bool
    message: str
    should_continue: bool


@dataclass(frozen=True)
class ErrorPattern:
    pattern_id: str
    error_types: list[str]
    frequency: int
    time_window: int
    confidence: float
    predicted_impact: str
    mitigation: str
    item_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PatternMatch:
    matched: bool
    patterns: list[ErrorPattern]
    risk_level: float


@dataclass(frozen=True)
class AccountHealth:
    item_id: str
    health_score: float
    consecutive_failures: int
    error_rate: float
    last_success_at: datetime | None
    suspicious_activity: bool
    rate_limit_timestamps: list[datetime]
    next_error_probability: float
    recommended_action: str
    confidence: float
    last_analyzed: datetime


@dataclass(frozen=True)
class SessionRisk:
    risk_level: str
    risk_score: float
    factors: dict[str, object]
    recommendations: list[str]
    should_proceed: bool
