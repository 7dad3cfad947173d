"""Structured logging for the APM pipeline and its host.

The pipeline logs through structlog on stdlib loggers under the
``apm_pipeline`` namespace. That namespace is the unwrapped channel: its
records are never fed back into the pipeline by PipelineLogHandler, so an
internal failure can be logged without raising another alert.

configure_logging() is for hosts (and the CLI) that have no logging setup of
their own. It renders JSON off a TTY and console output on one, and keeps an
installed PipelineLogHandler on the root logger when it swaps the handlers.
"""

import logging
import sys

import structlog

PIPELINE_LOGGER_PREFIX = "apm_pipeline"

# Libraries the pipeline itself drives. Their per-request INFO lines are kept
# out of the host's logs.
_QUIET_LOGGERS = ("httpx", "httpcore")


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def _install_root_handler(handler: logging.Handler, level: int) -> None:
    root_logger = logging.getLogger()
    bridges = [h for h in root_logger.handlers if getattr(h, "pipeline_bridge", False)]
    root_logger.handlers[:] = [handler, *bridges]
    root_logger.setLevel(level)


def configure_logging(
    service_name: str = "apm-pipeline",
    level: str = "INFO",
    json_output: bool | None = None,
) -> None:
    """Configure structlog and the root logger.

    Args:
        service_name: Name bound to every log entry as ``service``
        level: Log level ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
        json_output: Force JSON (True) or console (False) rendering.
            Defaults to JSON unless stdout is a TTY.
    """
    log_level = getattr(logging, level.upper())
    if json_output is None:
        json_output = not sys.stdout.isatty()

    shared_processors = _shared_processors()
    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processor=renderer,
        )
    )
    _install_root_handler(handler, log_level)

    # Webhook requests log at INFO per call
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.contextvars.bind_contextvars(service=service_name)


def bind_session_context(session_id: str, user_id: str | None = None) -> None:
    """Attach the current APM session to every subsequent log entry.

    A session without a user clears any user bound by a previous session.
    """
    structlog.contextvars.bind_contextvars(apm_session=session_id)
    if user_id:
        structlog.contextvars.bind_contextvars(apm_user=user_id)
    else:
        structlog.contextvars.unbind_contextvars("apm_user")
