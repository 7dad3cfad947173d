"""Session and metric aggregation with threshold alerting.

Owns the record for the current session, folds metrics and errors into its
counters, and decides when a threshold breach or a critical error becomes an
alert. Every public method is best-effort: failures are logged, never raised.
"""

import platform
from dataclasses import replace
from typing import Any

import structlog

from apm_pipeline._version import __version__
from apm_pipeline.alerter.classifier import Classification, SignalClassifier
from apm_pipeline.alerter.dedup import DedupCache, error_fingerprint, metric_fingerprint
from apm_pipeline.alerter.dispatcher import AlertDispatcher
from apm_pipeline.logging import bind_session_context
from apm_pipeline.metrics import DEDUP_SUPPRESSED, SIGNALS_CLASSIFIED
from apm_pipeline.models import (
    Alert,
    AlertSeverity,
    AlertType,
    ErrorRecord,
    ErrorSeverity,
    MetricSample,
    Session,
    utcnow,
)
from apm_pipeline.store.writer import StoreWriter

log = structlog.get_logger()

DEFAULT_THRESHOLDS: dict[str, float] = {
    "page_load_time": 3000,  # ms
    "memory_usage": 100,  # MB
    "error_rate": 5,  # percent
    "response_time": 1000,  # ms
}

# Breaches above threshold * CRITICAL_FACTOR are critical, the rest warnings
CRITICAL_FACTOR = 1.5

# Session fields the host may set through update_session(). total_errors is
# owned by record_error().
SESSION_FIELDS = {"page_views", "avg_load_time", "bounce_rate"}


def default_user_agent() -> str:
    """Client identity string attached to error records."""
    return (
        f"apm-pipeline/{__version__} "
        f"({platform.system()}; Python {platform.python_version()})"
    )


class SessionAggregator:
    """Folds metrics and errors into the current session and raises alerts."""

    def __init__(
        self,
        writer: StoreWriter,
        classifier: SignalClassifier,
        dedup: DedupCache,
        dispatcher: AlertDispatcher,
        thresholds: dict[str, float] | None = None,
        user_agent: str | None = None,
    ):
        self.writer = writer
        self.classifier = classifier
        self.dedup = dedup
        self.dispatcher = dispatcher
        self.thresholds = dict(DEFAULT_THRESHOLDS if thresholds is None else thresholds)
        self.user_agent = user_agent or default_user_agent()
        self.enabled = True
        self.user_id: str | None = None
        self.user_email: str | None = None
        self.url: str | None = None
        self._session: Session | None = None

    # ----- session lifecycle -----

    @property
    def session(self) -> Session | None:
        return self._session

    def _open_session(self) -> Session | None:
        session = self._session
        if session is None or not session.is_open:
            return None
        return session

    def _session_id(self) -> str | None:
        return self._session.session_id if self._session else None

    def set_user_id(self, user_id: str, email: str | None = None) -> None:
        """Set the owning identity, creating the deferred session if needed."""
        self.user_id = user_id
        if email:
            self.user_email = email
        session = self._open_session()
        if session is None:
            self.start_session()
        elif session.user_id != user_id:
            session.user_id = user_id
            self.writer.update("sessions", session.session_id, {"user_id": user_id})

    def start_session(self) -> Session | None:
        """Create the session record. Deferred until the user id is known."""
        if not self.enabled:
            return None
        if self.user_id is None:
            log.debug("Session creation deferred until user is known")
            return None
        session = self._open_session()
        if session is not None:
            return session

        try:
            session = Session(user_id=self.user_id)
            self._session = session
            bind_session_context(session.session_id, self.user_id)
            self.writer.insert("sessions", session.to_row())
            log.info("APM session started", session_id=session.session_id)
        except Exception:
            log.exception("Failed to start APM session")
        return self._session

    def close_session(self) -> None:
        """Set the session end time. Idempotent."""
        session = self._open_session()
        if session is None:
            return
        try:
            session.end_time = utcnow()
            self.writer.update(
                "sessions", session.session_id, {"end_time": session.end_time.isoformat()}
            )
            log.info(
                "APM session closed",
                session_id=session.session_id,
                total_errors=session.total_errors,
                page_views=session.page_views,
            )
        except Exception:
            log.exception("Failed to close APM session")

    def update_session(self, **partial: Any) -> None:
        """Merge lightweight fields into the open session and persist them."""
        if not self.enabled:
            return
        try:
            session = self._open_session()
            if session is None:
                log.debug("No open session, update dropped", fields=sorted(partial))
                return

            unknown = set(partial) - SESSION_FIELDS
            if unknown:
                log.warning("Ignoring unknown session fields", fields=sorted(unknown))
            changes = {key: value for key, value in partial.items() if key in SESSION_FIELDS}

            for key, value in changes.items():
                setattr(session, key, value)
            if "bounce_rate" not in changes:
                session.recompute()
                changes["bounce_rate"] = session.bounce_rate

            self.writer.update("sessions", session.session_id, changes)
        except Exception:
            log.exception("Failed to update APM session")

    # ----- metrics -----

    def record_metric(self, sample: MetricSample) -> Alert | None:
        """Persist a metric sample and check it against the threshold table.

        Returns:
            The alert raised by this sample, if any
        """
        if not self.enabled:
            return None
        try:
            self.writer.insert("metrics", sample.to_row(self.user_id, self._session_id()))

            session = self._open_session()
            if session is None:
                return None

            if sample.name == "page_load_time":
                session.add_load_time(sample.value)
                self.writer.update(
                    "sessions", session.session_id, {"avg_load_time": session.avg_load_time}
                )

            return self._check_threshold(session, sample)
        except Exception:
            log.exception("Failed to record metric", metric=sample.name)
            return None

    def _check_threshold(self, session: Session, sample: MetricSample) -> Alert | None:
        threshold = self.thresholds.get(sample.name)
        if threshold is None or not sample.value > threshold:
            return None

        if not self.dedup.check_and_remember(metric_fingerprint(sample.name, sample.value)):
            DEDUP_SUPPRESSED.labels(kind="metric").inc()
            log.debug("Threshold breach suppressed", metric=sample.name, value=sample.value)
            return None

        severity = (
            AlertSeverity.CRITICAL
            if sample.value > threshold * CRITICAL_FACTOR
            else AlertSeverity.WARNING
        )
        alert = Alert(
            alert_type=AlertType.PERFORMANCE,
            title=f"High {sample.name}",
            description=f"{sample.name} ({sample.value}) exceeded threshold ({threshold})",
            severity=severity,
            threshold_value=threshold,
            current_value=sample.value,
        )
        self.dispatcher.create_alert(alert, self.user_id, session.session_id)
        if severity is AlertSeverity.CRITICAL:
            self.dispatcher.notify(
                alert,
                user_id=self.user_id,
                url=self.url,
                user_agent=self.user_agent,
                user_email=self.user_email,
            )
        return alert

    # ----- errors -----

    def record_error(
        self, record: ErrorRecord, classification: Classification | None = None
    ) -> ErrorRecord | None:
        """Classify, persist and count an error.

        Filtered records are stored at low severity with their filter reason
        and never touch the session counters or raise alerts.

        Args:
            record: Error to record
            classification: Decision already made by the caller for this
                record. When given, the record is not classified again.

        Returns:
            The classified record as persisted
        """
        if not self.enabled:
            return None
        try:
            if classification is None:
                classification = self.classifier.classify(record.text)
            SIGNALS_CLASSIFIED.labels(category=classification.category.value).inc()
            record = self._apply_classification(record, classification)
            self.writer.insert("errors", record.to_row(self.user_id, self._session_id()))

            session = self._open_session()
            if record.is_filtered or session is None:
                return record

            session.total_errors += 1
            self.writer.update(
                "sessions", session.session_id, {"total_errors": session.total_errors}
            )

            if record.severity is ErrorSeverity.CRITICAL:
                self._raise_critical(session, record)
            return record
        except Exception:
            log.exception("Failed to record error", error_type=record.error_type)
            return None

    def _apply_classification(
        self, record: ErrorRecord, classification: Classification
    ) -> ErrorRecord:
        context = {
            "url": record.url or self.url,
            "user_agent": record.user_agent or self.user_agent,
        }
        if not classification.is_filtered:
            return replace(record, is_filtered=False, **context)

        tags = dict(record.tags)
        tags["filter_reason"] = classification.category.value
        if classification.pattern_tag:
            tags["pattern"] = classification.pattern_tag
        return replace(
            record,
            is_filtered=True,
            severity=ErrorSeverity.LOW,
            tags=tags,
            **context,
        )

    def _raise_critical(self, session: Session, record: ErrorRecord) -> Alert | None:
        fingerprint = error_fingerprint(record.error_type, record.message, record.component_name)
        if not self.dedup.check_and_remember(fingerprint):
            DEDUP_SUPPRESSED.labels(kind="error").inc()
            log.debug("Critical error alert suppressed", error_type=record.error_type)
            return None

        alert = Alert(
            alert_type=AlertType.ERROR,
            title="Critical Error Detected",
            description=(
                f"Critical error in {record.component_name or 'unknown'}: {record.message}"
            ),
            severity=AlertSeverity.CRITICAL,
        )
        self.dispatcher.create_alert(alert, self.user_id, session.session_id)
        self.dispatcher.notify(
            alert, user_id=self.user_id, error=record, user_email=self.user_email
        )
        return alert

    # ----- convenience recorders -----

    def record_page_view(self, path: str | None = None) -> None:
        session = self._open_session()
        if session is not None:
            self.update_session(page_views=session.page_views + 1)
        self.record_user_action("page_view", path=path)

    def record_page_load(self, load_time: float, path: str | None = None) -> Alert | None:
        return self.record_metric(
            MetricSample("performance", "page_load_time", load_time, tags=_path_tags(path))
        )

    def record_user_action(
        self, action: str, duration: float | None = None, path: str | None = None
    ) -> Alert | None:
        return self.record_metric(
            MetricSample("user_interaction", action, duration or 1, tags=_path_tags(path))
        )

    def record_api_call(
        self, endpoint: str, duration: float, status: int, path: str | None = None
    ) -> Alert | None:
        tags = {"endpoint": endpoint, "status": status, **_path_tags(path)}
        return self.record_metric(MetricSample("api", "response_time", duration, tags=tags))


def _path_tags(path: str | None) -> dict[str, Any]:
    return {"url": path} if path else {}
