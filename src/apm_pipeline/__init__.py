"""Client-side observability pipeline: interception, classification, alerting."""

from apm_pipeline._version import __version__
from apm_pipeline.config import Config
from apm_pipeline.models import (
    Alert,
    AlertSeverity,
    AlertType,
    ErrorRecord,
    ErrorSeverity,
    MetricSample,
    Session,
)
from apm_pipeline.pipeline import TelemetryPipeline

__all__ = [
    "__version__",
    "Config",
    "TelemetryPipeline",
    "Alert",
    "AlertSeverity",
    "AlertType",
    "ErrorRecord",
    "ErrorSeverity",
    "MetricSample",
    "Session",
]
