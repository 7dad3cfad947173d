"""Telemetry records produced by the pipeline.

MetricSample and ErrorRecord are frozen: a classified error is a new record
built with ``dataclasses.replace``. Session and Alert are the only mutable
records, and Alert only moves forward (open -> acknowledged -> resolved).
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorSeverity(str, Enum):
    """Severity of a recorded error."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertSeverity(str, Enum):
    """Severity of an alert."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(str, Enum):
    ERROR = "error"
    PERFORMANCE = "performance"


def new_session_id() -> str:
    """Session id in the form ``apm-<epoch ms>-<9 hex chars>``."""
    return f"apm-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class MetricSample:
    """A single numeric measurement."""

    metric_type: str  # performance, navigation, api, user_interaction
    name: str
    value: float
    tags: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_row(self, user_id: str | None, session_id: str | None) -> dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "session_id": session_id,
            "metric_type": self.metric_type,
            "metric_name": self.name,
            "metric_value": self.value,
            "tags": dict(self.tags),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ErrorRecord:
    """An error observed by the host, before or after classification."""

    error_type: str
    message: str
    stack_trace: str | None = None
    component_name: str | None = None
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    is_filtered: bool = False
    tags: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    url: str | None = None
    user_agent: str | None = None

    @property
    def text(self) -> str:
        """Message and stack joined, as seen by the classifier."""
        return f"{self.message} {self.stack_trace or ''}".strip()

    def to_row(self, user_id: str | None, session_id: str | None) -> dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "session_id": session_id,
            "error_type": self.error_type,
            "error_message": self.message,
            "error_stack": self.stack_trace,
            "component_name": self.component_name,
            "severity": self.severity.value,
            "is_filtered": self.is_filtered,
            "tags": dict(self.tags),
            "url": self.url,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Alert:
    """An operator-facing alert.

    State only moves forward: acknowledging a resolved alert is a no-op and
    resolving an open alert acknowledges it as well.
    """

    alert_type: AlertType
    title: str
    description: str
    severity: AlertSeverity
    threshold_value: float | None = None
    current_value: float | None = None
    is_acknowledged: bool = False
    is_resolved: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def acknowledge(self) -> bool:
        """Mark acknowledged. Returns True if the state changed."""
        if self.is_acknowledged:
            return False
        self.is_acknowledged = True
        return True

    def resolve(self) -> bool:
        """Mark resolved (and acknowledged). Returns True if the state changed."""
        if self.is_resolved:
            return False
        self.is_acknowledged = True
        self.is_resolved = True
        return True

    def to_row(self, user_id: str | None, session_id: str | None) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": user_id,
            "session_id": session_id,
            "alert_type": self.alert_type.value,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "threshold_value": self.threshold_value,
            "current_value": self.current_value,
            "is_acknowledged": self.is_acknowledged,
            "is_resolved": self.is_resolved,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Session:
    """Aggregation scope for one running host instance."""

    session_id: str = field(default_factory=new_session_id)
    user_id: str | None = None
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    page_views: int = 1
    total_errors: int = 0
    avg_load_time: float = 0.0
    bounce_rate: float = 100.0
    load_samples: int = 0

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def add_load_time(self, load_time: float) -> None:
        """Fold a page load sample into the running mean."""
        self.load_samples += 1
        self.avg_load_time += (load_time - self.avg_load_time) / self.load_samples

    def recompute(self) -> None:
        """Recompute derived aggregates after counters changed."""
        self.bounce_rate = 100.0 if self.page_views <= 1 else 0.0

    def to_row(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "page_views": self.page_views,
            "total_errors": self.total_errors,
            "avg_load_time": self.avg_load_time,
            "bounce_rate": self.bounce_rate,
        }
