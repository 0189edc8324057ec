"""
Data models for anonymous user cleanup runs and their monitoring.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(Enum):
    EXECUTION_FAILURE = "execution_failure"
    HIGH_DELETION_COUNT = "high_deletion_count"
    LONG_EXECUTION_TIME = "long_execution_time"
    SUCCESS_NOTIFICATION = "success_notification"


@dataclass
class AnonymousUserActivity:
    """An anonymous user with the timestamps used to judge inactivity."""
    id: str
    created_at: datetime
    last_chat_activity: Optional[datetime] = None
    last_session_activity: Optional[datetime] = None
    last_token_usage: Optional[datetime] = None

    @property
    def activity_dates(self) -> list[datetime]:
        return [
            moment
            for moment in (self.last_chat_activity, self.last_session_activity, self.last_token_usage)
            if moment is not None
        ]


@dataclass
class CleanupCandidate:
    id: str
    created_at: datetime
    last_activity: Optional[datetime]
    days_since_activity: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity.isoformat() if self.last_activity else None,
            "daysSinceActivity": self.days_since_activity,
        }


@dataclass
class CleanupResult:
    """Outcome of one cleanup pass."""
    success: bool = False
    deleted_count: int = 0
    deleted_user_ids: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    execution_time_ms: int = 0
    users_counted: int = 0
    # Set when the run aborted before finishing the batch
    fatal_error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.success:
            return "success"
        return "error" if self.fatal_error else "partial"


@dataclass
class CleanupMetrics:
    """Everything recorded about one cleanup execution."""
    execution_id: str
    executed_at: datetime
    executed_by: str  # "admin", "cron" or "script"
    users_counted: int
    users_deleted: int
    threshold_days: int
    batch_size: int
    duration_ms: int
    status: str  # "success", "partial" or "error"
    error_count: int = 0
    dry_run: bool = False
    admin_user: Optional[str] = None
    error_message: Optional[str] = None
    deleted_user_ids: list = field(default_factory=list)


@dataclass
class CleanupAlert:
    type: AlertType
    severity: AlertSeverity
    message: str
    should_notify: bool
    threshold: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "shouldNotify": self.should_notify,
            "threshold": self.threshold,
        }
