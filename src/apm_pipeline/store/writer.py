"""Fire-and-forget writes to a telemetry store through the scheduler."""

import asyncio
import functools
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import structlog

from apm_pipeline.metrics import RECORDS_PERSISTED
from apm_pipeline.scheduler import DEFAULT_IDLE_TIMEOUT, CooperativeScheduler, TaskHandle
from apm_pipeline.store.memory import TelemetryStore

log = structlog.get_logger()


class StoreWriter:
    """Submits store calls as idle-time tasks.

    A failing store call is logged and counted; it never reaches the caller.

    Stores that set ``blocking = True`` (network databases) are called on a
    single worker thread, so a slow round-trip never stalls the event loop.
    One worker keeps writes in submission order and serializes access to the
    store's connection.
    """

    def __init__(
        self,
        store: TelemetryStore,
        scheduler: CooperativeScheduler,
        timeout: float = DEFAULT_IDLE_TIMEOUT,
    ):
        self.store = store
        self.scheduler = scheduler
        self.timeout = timeout
        self.blocking = getattr(store, "blocking", False) is True
        self._executor: ThreadPoolExecutor | None = None

    def insert(self, table: str, row: dict[str, Any]) -> TaskHandle:
        return self.scheduler.schedule(
            self._task(functools.partial(self._insert, table, row)),
            timeout=self.timeout,
            name=f"insert-{table}",
        )

    def update(self, table: str, key: str, partial: dict[str, Any]) -> TaskHandle:
        return self.scheduler.schedule(
            self._task(functools.partial(self._update, table, key, partial)),
            timeout=self.timeout,
            name=f"update-{table}",
        )

    def close(self) -> None:
        """Stop the worker thread once queued writes have finished."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _task(self, call: Callable[[], None]) -> Callable[[], Any]:
        if not self.blocking:
            return call
        return functools.partial(self._run_off_loop, call)

    async def _run_off_loop(self, call: Callable[[], None]) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="apm-store")
        await asyncio.get_running_loop().run_in_executor(self._executor, call)

    def _insert(self, table: str, row: dict[str, Any]) -> None:
        try:
            self.store.insert(table, row)
        except Exception as e:
            RECORDS_PERSISTED.labels(table=table, status="error").inc()
            log.error("Failed to insert telemetry", table=table, error=str(e))
            return
        RECORDS_PERSISTED.labels(table=table, status="success").inc()

    def _update(self, table: str, key: str, partial: dict[str, Any]) -> None:
        try:
            self.store.update(table, key, partial)
        except Exception as e:
            log.error("Failed to update telemetry", table=table, key=key, error=str(e))
