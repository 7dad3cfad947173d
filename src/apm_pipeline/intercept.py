"""Diagnostic interception with pass-through.

The host writes diagnostics through a DiagnosticSink with three levels.
InterceptingSink wraps the real sink: text that is not filterable noise still
reaches it, and everything is fed into the aggregator. A wrapped call never
raises.

PipelineLogHandler does the same for stdlib logging records.
"""

import json
import logging
import re
import traceback
from pathlib import Path
from typing import Any, Protocol

import structlog

from apm_pipeline.aggregator import SessionAggregator
from apm_pipeline.logging import PIPELINE_LOGGER_PREFIX
from apm_pipeline.models import ErrorRecord, ErrorSeverity, MetricSample

log = structlog.get_logger()

_SEVERITY_ORDER = [
    ErrorSeverity.LOW,
    ErrorSeverity.MEDIUM,
    ErrorSeverity.HIGH,
    ErrorSeverity.CRITICAL,
]

# "took 1.2 s", "heap 512 KB"
_PERFORMANCE_VALUE = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|MB|KB)\b")


class DiagnosticSink(Protocol):
    """Three severity-leveled text output channels."""

    def error(self, *args: Any) -> None: ...

    def warning(self, *args: Any) -> None: ...

    def info(self, *args: Any) -> None: ...


def format_message(args: tuple[Any, ...]) -> str:
    """Join sink arguments into one line of text."""
    parts = []
    for arg in args:
        if isinstance(arg, str):
            parts.append(arg)
        elif isinstance(arg, BaseException):
            parts.append(str(arg) or type(arg).__name__)
        else:
            try:
                parts.append(json.dumps(arg, default=str))
            except (TypeError, ValueError):
                parts.append(str(arg))
    return " ".join(parts)


def extract_performance_value(message: str) -> float | None:
    """Pull a timing or size out of a log line, normalized to ms or MB."""
    match = _PERFORMANCE_VALUE.search(message)
    if not match:
        return None
    value = float(match.group(1))
    unit = match.group(2)
    if unit == "s":
        return value * 1000
    if unit == "KB":
        return value / 1024
    return value


def _max_severity(base: ErrorSeverity, hint: ErrorSeverity | None) -> ErrorSeverity:
    if hint is None:
        return base
    return max(base, hint, key=_SEVERITY_ORDER.index)


class LoggerSink:
    """Raw sink backed by a stdlib or structlog logger."""

    def __init__(self, logger: Any = None):
        self._logger = logger if logger is not None else logging.getLogger("host")

    def error(self, *args: Any) -> None:
        self._logger.error(format_message(args))

    def warning(self, *args: Any) -> None:
        self._logger.warning(format_message(args))

    def info(self, *args: Any) -> None:
        self._logger.info(format_message(args))


class InterceptingSink:
    """DiagnosticSink decorator that classifies and records everything it sees."""

    def __init__(self, sink: DiagnosticSink, aggregator: SessionAggregator):
        self.original = sink
        self.aggregator = aggregator
        self.enabled = True
        self._suppress_next = 0

    def suppress_next_error(self) -> None:
        """Record the next error at low severity instead of emitting it."""
        self._suppress_next += 1

    def error(self, *args: Any) -> None:
        if not self.enabled:
            self.original.error(*args)
            return
        try:
            message = format_message(args)
            caller = traceback.extract_stack(limit=2)[0]
            component = f"{Path(caller.filename).stem}.{caller.name}"

            if self._suppress_next:
                self._suppress_next -= 1
                self.aggregator.record_error(
                    ErrorRecord(
                        error_type="console_error_suppressed",
                        message=message,
                        component_name=component,
                        severity=ErrorSeverity.LOW,
                        tags={"source": "console", "suppressed": True},
                    )
                )
                return

            classification = self.aggregator.classifier.classify(message)
            if classification.is_filtered:
                self.aggregator.record_error(
                    ErrorRecord(
                        error_type="console_error_filtered",
                        message=message,
                        component_name=component,
                        severity=ErrorSeverity.LOW,
                        tags={"source": "console"},
                    ),
                    classification,
                )
                return

            self.original.error(*args)
            stack = "".join(traceback.format_list(traceback.extract_stack(limit=10)[:-1]))
            self.aggregator.record_error(
                ErrorRecord(
                    error_type="console_error",
                    message=message,
                    stack_trace=stack,
                    component_name=component,
                    severity=_max_severity(ErrorSeverity.HIGH, classification.severity_hint),
                    tags={"source": "console"},
                ),
                classification,
            )
        except Exception:
            log.exception("Diagnostic intercept failed", channel="error")

    def warning(self, *args: Any) -> None:
        if not self.enabled:
            self.original.warning(*args)
            return
        try:
            message = format_message(args)
            classification = self.aggregator.classifier.classify(message)
            if classification.is_filtered:
                return

            self.original.warning(*args)
            caller = traceback.extract_stack(limit=2)[0]
            self.aggregator.record_error(
                ErrorRecord(
                    error_type="console_warning",
                    message=message,
                    component_name=f"{Path(caller.filename).stem}.{caller.name}",
                    severity=_max_severity(ErrorSeverity.MEDIUM, classification.severity_hint),
                    tags={"source": "console"},
                ),
                classification,
            )
        except Exception:
            log.exception("Diagnostic intercept failed", channel="warning")

    def info(self, *args: Any) -> None:
        if not self.enabled:
            self.original.info(*args)
            return
        try:
            message = format_message(args)
            if not self.aggregator.classifier.classify(message).is_filtered:
                self.original.info(*args)

            lowered = message.lower()
            if "performance" in lowered or "timing" in lowered:
                value = extract_performance_value(message)
                if value is not None:
                    self.aggregator.record_metric(
                        MetricSample(
                            metric_type="performance",
                            name="console_performance",
                            value=value,
                            tags={"source": "console", "message": message[:100]},
                        )
                    )
        except Exception:
            log.exception("Diagnostic intercept failed", channel="info")


class PipelineLogHandler(logging.Handler):
    """Feeds stdlib warning and error records into the pipeline.

    Records from the pipeline's own loggers are ignored, as is anything
    logged while a record is being ingested, so the pipeline never alerts on
    its own output.
    """

    # Kept on the root logger by configure_logging()
    pipeline_bridge = True

    def __init__(self, aggregator: SessionAggregator, level: int = logging.WARNING):
        super().__init__(level)
        self.aggregator = aggregator
        self._emitting = False

    def emit(self, record: logging.LogRecord) -> None:
        if self._emitting or record.name.startswith(PIPELINE_LOGGER_PREFIX):
            return
        if record.levelno < logging.WARNING:
            return

        self._emitting = True
        try:
            message = record.getMessage()
            hint = self.aggregator.classifier.classify(message).severity_hint
            if record.levelno >= logging.ERROR:
                base = (
                    ErrorSeverity.CRITICAL
                    if record.levelno >= logging.CRITICAL
                    else ErrorSeverity.HIGH
                )
                stack = None
                if record.exc_info:
                    stack = "".join(traceback.format_exception(*record.exc_info))
                error = ErrorRecord(
                    error_type="log_error",
                    message=message,
                    stack_trace=stack,
                    component_name=record.name,
                    severity=_max_severity(base, hint),
                    tags={"source": "logging", "logger": record.name},
                )
            else:
                error = ErrorRecord(
                    error_type="log_warning",
                    message=message,
                    component_name=record.name,
                    severity=_max_severity(ErrorSeverity.MEDIUM, hint),
                    tags={"source": "logging", "logger": record.name},
                )
            self.aggregator.record_error(error)
        except Exception:
            self.handleError(record)
        finally:
            self._emitting = False
