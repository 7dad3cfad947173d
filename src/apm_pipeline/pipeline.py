"""Composition root for the observability pipeline.

One TelemetryPipeline is created at host startup. It builds the scheduler
and hands it to every component, so there are no module-level singletons:

    pipeline = TelemetryPipeline(Config.from_env())
    await pipeline.start()
    pipeline.set_user_id("user-123")
    pipeline.sink.error("Something broke")
    ...
    await pipeline.shutdown()
"""

import logging
from typing import Any

import psycopg2
import structlog

from apm_pipeline.aggregator import SessionAggregator
from apm_pipeline.alerter.classifier import FilterLevel
from apm_pipeline.alerter.dedup import DedupCache
from apm_pipeline.alerter.discord import AlertChannel, DiscordClient
from apm_pipeline.alerter.dispatcher import AlertDispatcher
from apm_pipeline.config import Config
from apm_pipeline.intercept import DiagnosticSink, InterceptingSink, LoggerSink, PipelineLogHandler
from apm_pipeline.models import Alert, ErrorRecord, MetricSample
from apm_pipeline.scheduler import CooperativeScheduler
from apm_pipeline.store import InMemoryStore, PostgresStore, StoreWriter, TelemetryStore

log = structlog.get_logger()


def _default_store(config: Config) -> TelemetryStore:
    if config.postgres is None:
        return InMemoryStore()
    try:
        return PostgresStore.connect(config.postgres.dsn)
    except psycopg2.Error as e:
        log.error("Cannot connect to Postgres, keeping telemetry in memory", error=str(e))
        return InMemoryStore()


class TelemetryPipeline:
    """Wires scheduler, classifier, dedup cache, aggregator and dispatcher."""

    def __init__(
        self,
        config: Config | None = None,
        store: TelemetryStore | None = None,
        channel: AlertChannel | None = None,
        sink: DiagnosticSink | None = None,
        scheduler: CooperativeScheduler | None = None,
    ):
        """Build the pipeline.

        Args:
            config: Pipeline configuration (default: Config())
            store: Telemetry store (default: Postgres if configured, else memory)
            channel: Notification channel (default: Discord if a webhook is set)
            sink: The host's raw diagnostic sink (default: stdlib 'host' logger)
            scheduler: Scheduler to share with the host (default: a new one)
        """
        self.config = config or Config()
        self.scheduler = scheduler or CooperativeScheduler()
        self.store = store if store is not None else _default_store(self.config)
        self.writer = StoreWriter(self.store, self.scheduler, timeout=self.config.idle_timeout)

        if channel is None and self.config.discord_webhook_url:
            channel = DiscordClient(
                self.config.discord_webhook_url, ping_critical=self.config.ping_critical
            )
        self.channel = channel

        self.classifier = self.config.rules.build_classifier(self.config.filter_level)
        self.dedup = DedupCache(self.scheduler, sweep_interval=self.config.sweep_interval)
        self.dispatcher = AlertDispatcher(self.writer, channel=channel)
        self.aggregator = SessionAggregator(
            self.writer,
            self.classifier,
            self.dedup,
            self.dispatcher,
            thresholds=self.config.rules.effective_thresholds(),
        )
        self.sink = InterceptingSink(sink if sink is not None else LoggerSink(), self.aggregator)
        self._log_handler: PipelineLogHandler | None = None
        self._log_handler_target: logging.Logger | None = None
        self.set_enabled(self.config.enabled)

    async def __aenter__(self) -> "TelemetryPipeline":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ----- lifecycle -----

    async def start(self) -> None:
        """Arm the dedup sweep and open the session if the user is known."""
        try:
            self.dedup.start()
            if self.config.user_id:
                self.aggregator.set_user_id(self.config.user_id)
            else:
                self.aggregator.start_session()
            log.info(
                "APM pipeline started",
                filter_level=self.classifier.filter_level.value,
                notifications=self.channel is not None,
            )
        except Exception:
            log.exception("Failed to start APM pipeline")

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Close the session, flush pending work and release resources."""
        try:
            self.remove_log_handler()
            self.aggregator.close_session()
            self.dedup.stop()
            await self.scheduler.drain(timeout)
            self.scheduler.close()
            self.writer.close()
            close = getattr(self.channel, "close", None)
            if close is not None:
                await close()
            log.info("APM pipeline stopped")
        except Exception:
            log.exception("Failed to shut down APM pipeline cleanly")

    # ----- configuration surface -----

    def set_user_id(self, user_id: str, email: str | None = None) -> None:
        self.aggregator.set_user_id(user_id, email=email)

    def set_enabled(self, enabled: bool) -> None:
        self.aggregator.enabled = enabled
        self.sink.enabled = enabled

    def set_filter_level(self, level: FilterLevel | str) -> None:
        try:
            self.classifier.filter_level = FilterLevel(level)
        except ValueError:
            log.warning("Ignoring unknown filter level", level=level)

    def set_context(self, url: str | None = None) -> None:
        """Set the URL attached to subsequent error records."""
        self.aggregator.url = url

    # ----- ingestion -----

    def record_metric(self, sample: MetricSample) -> Alert | None:
        return self.aggregator.record_metric(sample)

    def record_error(self, record: ErrorRecord) -> ErrorRecord | None:
        return self.aggregator.record_error(record)

    def update_session(self, **partial: Any) -> None:
        self.aggregator.update_session(**partial)

    def record_page_view(self, path: str | None = None) -> None:
        self.aggregator.record_page_view(path)

    def record_page_load(self, load_time: float, path: str | None = None) -> Alert | None:
        return self.aggregator.record_page_load(load_time, path)

    def record_user_action(self, action: str, duration: float | None = None) -> Alert | None:
        return self.aggregator.record_user_action(action, duration)

    def record_api_call(self, endpoint: str, duration: float, status: int) -> Alert | None:
        return self.aggregator.record_api_call(endpoint, duration, status)

    # ----- alerts -----

    def acknowledge_alert(self, alert_id: str) -> bool:
        return self.dispatcher.acknowledge(alert_id)

    def resolve_alert(self, alert_id: str) -> bool:
        return self.dispatcher.resolve(alert_id)

    # ----- stdlib logging bridge -----

    def install_log_handler(
        self, logger: logging.Logger | None = None, level: int = logging.WARNING
    ) -> PipelineLogHandler:
        """Feed warning/error records of ``logger`` (default: root) into the pipeline."""
        self.remove_log_handler()
        target = logger or logging.getLogger()
        handler = PipelineLogHandler(self.aggregator, level=level)
        target.addHandler(handler)
        self._log_handler = handler
        self._log_handler_target = target
        return handler

    def remove_log_handler(self) -> None:
        if self._log_handler is not None and self._log_handler_target is not None:
            self._log_handler_target.removeHandler(self._log_handler)
        self._log_handler = None
        self._log_handler_target = None

    def stats(self) -> dict[str, Any]:
        """Snapshot of session counters, alerts and dedup state."""
        session = self.aggregator.session
        return {
            "session_id": session.session_id if session else None,
            "session_open": bool(session and session.is_open),
            "page_views": session.page_views if session else 0,
            "total_errors": session.total_errors if session else 0,
            "avg_load_time": session.avg_load_time if session else 0.0,
            "alerts": len(self.dispatcher.alerts),
            "open_alerts": len(self.dispatcher.open_alerts()),
            "dedup": self.dedup.stats(),
            "pending_tasks": self.scheduler.active_count,
        }
