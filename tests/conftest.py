"""Shared test fixtures for apm-pipeline."""

from typing import Any

import pytest

from apm_pipeline.aggregator import SessionAggregator
from apm_pipeline.alerter.classifier import SignalClassifier
from apm_pipeline.alerter.dedup import DedupCache
from apm_pipeline.alerter.discord import AlertMessage
from apm_pipeline.alerter.dispatcher import AlertDispatcher
from apm_pipeline.scheduler import CooperativeScheduler
from apm_pipeline.store import InMemoryStore, StoreWriter


class RecordingChannel:
    """AlertChannel that remembers what it was asked to send."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.messages: list[AlertMessage] = []

    async def send_alert(self, message: AlertMessage) -> bool:
        self.messages.append(message)
        return self.succeed


class RecordingSink:
    """DiagnosticSink that keeps every call instead of printing it."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def error(self, *args: Any) -> None:
        self.calls.append(("error", args))

    def warning(self, *args: Any) -> None:
        self.calls.append(("warning", args))

    def info(self, *args: Any) -> None:
        self.calls.append(("info", args))

    def levels(self) -> list[str]:
        return [level for level, _ in self.calls]


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def scheduler() -> CooperativeScheduler:
    return CooperativeScheduler()


@pytest.fixture
def writer(store: InMemoryStore, scheduler: CooperativeScheduler) -> StoreWriter:
    # Short idle timeout keeps tests fast when the loop never goes idle
    return StoreWriter(store, scheduler, timeout=0.05)


@pytest.fixture
def dispatcher(writer: StoreWriter, channel: RecordingChannel) -> AlertDispatcher:
    return AlertDispatcher(writer, channel=channel)


@pytest.fixture
def aggregator(
    writer: StoreWriter, scheduler: CooperativeScheduler, dispatcher: AlertDispatcher
) -> SessionAggregator:
    """Aggregator without a user. Tests call set_user_id() inside the loop."""
    return SessionAggregator(
        writer,
        SignalClassifier(),
        DedupCache(scheduler),
        dispatcher,
        user_agent="test-agent",
    )
