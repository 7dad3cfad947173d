"""Prometheus metrics for the APM pipeline.

The pipeline registers its metrics on the default registry and never serves
them itself. Hosts that already expose ``/metrics`` pick them up for free:

    from prometheus_client import generate_latest
    generate_latest()  # includes apm_* series
"""

from apm_pipeline.metrics.apm import (
    ALERTS_CREATED,
    DEDUP_SUPPRESSED,
    NOTIFICATIONS_SENT,
    RECORDS_PERSISTED,
    SCHEDULER_ACTIVE,
    SCHEDULER_TASKS,
    SIGNALS_CLASSIFIED,
)

__all__ = [
    "ALERTS_CREATED",
    "DEDUP_SUPPRESSED",
    "NOTIFICATIONS_SENT",
    "RECORDS_PERSISTED",
    "SCHEDULER_ACTIVE",
    "SCHEDULER_TASKS",
    "SIGNALS_CLASSIFIED",
]
