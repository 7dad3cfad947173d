"""Tests for the dedup cache and fingerprints."""

import asyncio

import pytest

from apm_pipeline.alerter.dedup import DedupCache, error_fingerprint, metric_fingerprint
from apm_pipeline.scheduler import CooperativeScheduler


class TestFingerprints:
    """Tests for fingerprint helpers."""

    def test_metric_fingerprint_buckets_value(self):
        """Values in the same 100-wide bucket share a fingerprint."""
        assert metric_fingerprint("page_load_time", 3510) == "metric:page_load_time:3500"
        assert metric_fingerprint("page_load_time", 3599.9) == "metric:page_load_time:3500"
        assert metric_fingerprint("page_load_time", 3600) == "metric:page_load_time:3600"

    def test_metric_fingerprint_custom_bucket(self):
        assert metric_fingerprint("memory_usage", 157, bucket=50) == "metric:memory_usage:150"

    def test_error_fingerprint_format(self):
        fp = error_fingerprint("console_error", "Boom", "app.render")
        prefix, error_type, component, digest = fp.split(":")
        assert prefix == "error"
        assert error_type == "console_error"
        assert component == "app.render"
        assert len(digest) == 12

    def test_error_fingerprint_normalizes_whitespace_and_case(self):
        a = error_fingerprint("console_error", "Database   connection LOST", "db")
        b = error_fingerprint("console_error", "database connection lost", "db")
        assert a == b

    def test_error_fingerprint_distinguishes_components(self):
        a = error_fingerprint("console_error", "boom", "a")
        b = error_fingerprint("console_error", "boom", "b")
        assert a != b

    def test_error_fingerprint_unknown_component(self):
        assert ":unknown:" in error_fingerprint("console_error", "boom")


class TestDedupCache:
    """Tests for the fingerprint cache."""

    def test_remember_and_seen(self, scheduler: CooperativeScheduler):
        cache = DedupCache(scheduler)
        assert cache.seen("fp") is False
        cache.remember("fp")
        assert cache.seen("fp") is True
        assert len(cache) == 1

    def test_check_and_remember(self, scheduler: CooperativeScheduler):
        """First occurrence is new, repeats are suppressed."""
        cache = DedupCache(scheduler)
        assert cache.check_and_remember("fp") is True
        assert cache.check_and_remember("fp") is False
        assert cache.check_and_remember("fp") is False
        assert cache.check_and_remember("other") is True

    def test_stats_counts_suppressed(self, scheduler: CooperativeScheduler):
        cache = DedupCache(scheduler)
        for _ in range(4):
            cache.check_and_remember("noisy")
        cache.check_and_remember("quiet")

        stats = cache.stats()
        assert stats["unique_fingerprints"] == 2
        assert stats["suppressed"] == 3
        assert stats["top_suppressed"] == [("noisy", 3)]

    def test_sweep_clears_everything(self, scheduler: CooperativeScheduler):
        cache = DedupCache(scheduler)
        cache.check_and_remember("a")
        cache.check_and_remember("b")
        cache.check_and_remember("b")

        assert cache.sweep() == 2
        assert len(cache) == 0
        assert cache.stats()["suppressed"] == 0
        # After a sweep the same fingerprint is new again
        assert cache.check_and_remember("a") is True

    @pytest.mark.asyncio
    async def test_periodic_sweep(self, scheduler: CooperativeScheduler):
        """The armed timer submits a sweep through the scheduler."""
        cache = DedupCache(scheduler, sweep_interval=0.02)
        cache.remember("fp")
        cache.start()
        assert cache.running

        await asyncio.sleep(0.1)
        await scheduler.drain(1.0)
        assert cache.seen("fp") is False

        cache.stop()
        assert not cache.running

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, scheduler: CooperativeScheduler):
        cache = DedupCache(scheduler, sweep_interval=10)
        cache.start()
        timer = cache._timer
        cache.start()
        assert cache._timer is timer
        cache.stop()

    @pytest.mark.asyncio
    async def test_stopped_cache_keeps_entries(self, scheduler: CooperativeScheduler):
        cache = DedupCache(scheduler, sweep_interval=0.02)
        cache.start()
        cache.stop()
        cache.remember("fp")

        await asyncio.sleep(0.06)
        assert cache.seen("fp") is True
