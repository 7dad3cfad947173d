"""Alert persistence, notification and state transitions."""

import functools
from collections.abc import Iterable

import structlog

from apm_pipeline.alerter.discord import AlertChannel, AlertMessage
from apm_pipeline.metrics import ALERTS_CREATED, NOTIFICATIONS_SENT
from apm_pipeline.models import Alert, AlertSeverity, AlertType, ErrorRecord
from apm_pipeline.store.writer import StoreWriter

log = structlog.get_logger()


class AlertDispatcher:
    """Persists alerts and pushes critical ones to a notification channel.

    Keeps an in-memory mirror of the alerts it created so acknowledge/resolve
    can enforce monotonic transitions without reading the store.
    """

    def __init__(
        self,
        writer: StoreWriter,
        channel: AlertChannel | None = None,
        notify_types: Iterable[AlertType] = (AlertType.ERROR, AlertType.PERFORMANCE),
    ):
        self.writer = writer
        self.channel = channel
        self.notify_types = frozenset(notify_types)
        self._alerts: dict[str, Alert] = {}
        self._notified: set[str] = set()

    @property
    def alerts(self) -> list[Alert]:
        """All alerts created in this process, oldest first."""
        return list(self._alerts.values())

    def get(self, alert_id: str) -> Alert | None:
        return self._alerts.get(alert_id)

    def open_alerts(self) -> list[Alert]:
        return [alert for alert in self._alerts.values() if not alert.is_acknowledged]

    def create_alert(
        self,
        alert: Alert,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> Alert:
        """Record an alert and schedule its persistence.

        Returns immediately; the store write happens at idle time.
        """
        try:
            self._alerts[alert.id] = alert
            ALERTS_CREATED.labels(
                alert_type=alert.alert_type.value, severity=alert.severity.value
            ).inc()
            log.info(
                "Alert created",
                alert_id=alert.id,
                alert_type=alert.alert_type.value,
                severity=alert.severity.value,
                title=alert.title,
            )
            self.writer.insert("alerts", alert.to_row(user_id, session_id))
        except Exception:
            log.exception("Failed to create alert", title=alert.title)
        return alert

    def notify(
        self,
        alert: Alert,
        user_id: str | None = None,
        error: ErrorRecord | None = None,
        url: str | None = None,
        user_agent: str | None = None,
        user_email: str | None = None,
    ) -> bool:
        """Push a critical alert through the notification channel.

        Each alert is sent at most once. Failures are logged, not retried.

        Returns:
            True if a notification was scheduled
        """
        if alert.severity is not AlertSeverity.CRITICAL or alert.alert_type not in self.notify_types:
            NOTIFICATIONS_SENT.labels(status="skipped").inc()
            return False
        if self.channel is None:
            log.debug("No notification channel configured", alert_id=alert.id)
            NOTIFICATIONS_SENT.labels(status="skipped").inc()
            return False
        if alert.id in self._notified:
            return False
        self._notified.add(alert.id)

        message = AlertMessage(
            alert_type=alert.alert_type.value,
            title=alert.title,
            description=alert.description,
            severity=alert.severity.value,
            user_id=user_id,
            metric_value=alert.current_value,
            threshold_value=alert.threshold_value,
            error_message=error.message if error else None,
            error_stack=error.stack_trace if error else None,
            component_name=error.component_name if error else None,
            url=url or (error.url if error else None),
            user_agent=user_agent or (error.user_agent if error else None),
            user_email=user_email,
        )
        self.writer.scheduler.schedule(
            functools.partial(self._send, alert.id, message), name="notify-alert"
        )
        return True

    async def _send(self, alert_id: str, message: AlertMessage) -> None:
        channel = self.channel
        if channel is None:
            return
        try:
            sent = await channel.send_alert(message)
        except Exception:
            log.exception("Notification channel raised", alert_id=alert_id)
            sent = False

        if sent:
            NOTIFICATIONS_SENT.labels(status="sent").inc()
            log.info("Alert notification sent", alert_id=alert_id, title=message.title)
        else:
            NOTIFICATIONS_SENT.labels(status="failed").inc()
            log.warning(
                "Alert notification failed, alert kept for manual inspection",
                alert_id=alert_id,
                title=message.title,
            )

    def acknowledge(self, alert_id: str) -> bool:
        """Acknowledge an alert. No-op if already acknowledged or resolved."""
        alert = self._alerts.get(alert_id)
        if alert is None:
            log.warning("Cannot acknowledge unknown alert", alert_id=alert_id)
            return False
        if not alert.acknowledge():
            return False
        self.writer.update("alerts", alert_id, {"is_acknowledged": True})
        log.info("Alert acknowledged", alert_id=alert_id)
        return True

    def resolve(self, alert_id: str) -> bool:
        """Resolve an alert, acknowledging it first if needed."""
        alert = self._alerts.get(alert_id)
        if alert is None:
            log.warning("Cannot resolve unknown alert", alert_id=alert_id)
            return False
        if not alert.resolve():
            return False
        self.writer.update("alerts", alert_id, {"is_acknowledged": True, "is_resolved": True})
        log.info("Alert resolved", alert_id=alert_id)
        return True
