"""Prometheus metrics describing the pipeline's own health.

All metrics use the 'apm_' prefix for consistency.
"""

from typing import Any

from prometheus_client import REGISTRY, Counter, Gauge


def _get_or_create_metric(
    metric_class: type, name: str, description: str, labelnames: list[str]
) -> Any:
    """Get existing metric or create new one (handles module reloads)."""
    try:
        return metric_class(name, description, labelnames)
    except ValueError:
        # NOTE: _names_to_collectors is private API, but prometheus_client has no
        # public lookup by name. Only reached when the module is imported twice.
        for collector in REGISTRY._names_to_collectors.values():
            if hasattr(collector, "_name") and collector._name == name:
                return collector
        raise


# Persistence outcomes per table
RECORDS_PERSISTED = _get_or_create_metric(
    Counter,
    "apm_records_persisted_total",
    "Telemetry records handed to the store",
    ["table", "status"],  # status: success, error
)

# Classifier decisions
SIGNALS_CLASSIFIED = _get_or_create_metric(
    Counter,
    "apm_signals_classified_total",
    "Diagnostic signals classified",
    ["category"],  # genuine, noise, known_infra, strict
)

ALERTS_CREATED = _get_or_create_metric(
    Counter,
    "apm_alerts_created_total",
    "Alerts created after a threshold breach or critical error",
    ["alert_type", "severity"],
)

NOTIFICATIONS_SENT = _get_or_create_metric(
    Counter,
    "apm_notifications_total",
    "Outbound alert notifications",
    ["status"],  # sent, failed, skipped
)

DEDUP_SUPPRESSED = _get_or_create_metric(
    Counter,
    "apm_dedup_suppressed_total",
    "Signals suppressed because their fingerprint was seen in the sweep window",
    ["kind"],  # metric, error
)

SCHEDULER_TASKS = _get_or_create_metric(
    Counter,
    "apm_scheduler_tasks_total",
    "Deferred tasks finished by the cooperative scheduler",
    ["status"],  # completed, failed, cancelled
)

SCHEDULER_ACTIVE = _get_or_create_metric(
    Gauge,
    "apm_scheduler_active_tasks",
    "Tasks currently registered with the cooperative scheduler",
    [],
)
