"""Tests for the cooperative scheduler."""

import asyncio

import pytest

from apm_pipeline.scheduler import CooperativeScheduler, EventLoopIdleProvider, TaskState


class TestSchedule:
    """Tests for schedule() and cancel()."""

    @pytest.mark.asyncio
    async def test_callback_runs(self, scheduler: CooperativeScheduler) -> None:
        ran = []
        handle = scheduler.schedule(lambda: ran.append(1))

        assert await scheduler.drain(1.0)
        assert ran == [1]
        assert handle.state is TaskState.DONE
        assert scheduler.active_count == 0

    @pytest.mark.asyncio
    async def test_submission_order_preserved(self, scheduler: CooperativeScheduler) -> None:
        """A burst of tasks runs in the order it was submitted."""
        order = []
        for i in range(20):
            scheduler.schedule(lambda i=i: order.append(i), timeout=0.5)

        await scheduler.drain(2.0)
        assert order == list(range(20))

    @pytest.mark.asyncio
    async def test_failing_task_is_isolated(self, scheduler: CooperativeScheduler) -> None:
        """A raising callback never affects the caller or other tasks."""
        ran = []

        def boom() -> None:
            raise RuntimeError("boom")

        failed = scheduler.schedule(boom)
        ok = scheduler.schedule(lambda: ran.append("ok"))

        assert await scheduler.drain(1.0)
        assert failed.state is TaskState.FAILED
        assert ok.state is TaskState.DONE
        assert ran == ["ok"]

    @pytest.mark.asyncio
    async def test_coroutine_callback_is_awaited(self, scheduler: CooperativeScheduler) -> None:
        ran = []

        async def work() -> None:
            await asyncio.sleep(0)
            ran.append("async")

        handle = scheduler.schedule(work)
        assert await scheduler.drain(1.0)
        assert ran == ["async"]
        assert handle.state is TaskState.DONE

    @pytest.mark.asyncio
    async def test_failing_coroutine_is_isolated(self, scheduler: CooperativeScheduler) -> None:
        async def boom() -> None:
            raise ValueError("async boom")

        handle = scheduler.schedule(boom)
        assert await scheduler.drain(1.0)
        assert handle.state is TaskState.FAILED

    @pytest.mark.asyncio
    async def test_cancelled_task_never_runs(self, scheduler: CooperativeScheduler) -> None:
        ran = []
        handle = scheduler.schedule(lambda: ran.append(1))
        scheduler.cancel(handle)

        assert await scheduler.drain(1.0)
        await asyncio.sleep(0.05)
        assert ran == []
        assert handle.cancelled

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, scheduler: CooperativeScheduler) -> None:
        handle = scheduler.schedule(lambda: None)
        scheduler.cancel(handle)
        scheduler.cancel(handle)

        assert handle.state is TaskState.CANCELLED
        assert scheduler.active_count == 0

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, scheduler: CooperativeScheduler) -> None:
        handle = scheduler.schedule(lambda: None)
        await scheduler.drain(1.0)
        scheduler.cancel(handle)

        assert handle.state is TaskState.DONE

    @pytest.mark.asyncio
    async def test_next_tick_fallback(self) -> None:
        """Without an idle primitive, tasks still run on the next tick."""
        scheduler = CooperativeScheduler(prefer_idle=False)
        ran = []
        scheduler.schedule(lambda: ran.append(1))

        await asyncio.sleep(0)
        assert ran == [1]

    def test_schedule_without_loop_is_dropped(self) -> None:
        """Outside a running loop the task is dropped, not raised."""
        scheduler = CooperativeScheduler()
        handle = scheduler.schedule(lambda: None)

        assert handle.cancelled
        assert scheduler.active_count == 0

    @pytest.mark.asyncio
    async def test_close_cancels_pending(self, scheduler: CooperativeScheduler) -> None:
        ran = []
        handles = [scheduler.schedule(lambda: ran.append(1)) for _ in range(3)]
        scheduler.close()

        await asyncio.sleep(0.05)
        assert ran == []
        assert all(h.cancelled for h in handles)


class TestIdleProvider:
    """Tests for event loop idle detection."""

    @pytest.mark.asyncio
    async def test_supported_on_default_loop(self) -> None:
        assert EventLoopIdleProvider.supported(asyncio.get_running_loop())

    @pytest.mark.asyncio
    async def test_deadline_forces_run(self) -> None:
        """A request runs once its timeout expires even if the loop is busy."""
        loop = asyncio.get_running_loop()
        provider = EventLoopIdleProvider(loop, poll_interval=0.001)
        ran = asyncio.Event()
        provider.request(ran.set, timeout=0.02)

        await asyncio.wait_for(ran.wait(), timeout=1.0)
        assert provider.pending == 0

    @pytest.mark.asyncio
    async def test_cancelled_request_skipped(self) -> None:
        loop = asyncio.get_running_loop()
        provider = EventLoopIdleProvider(loop, poll_interval=0.001)
        ran = []
        token = provider.request(lambda: ran.append(1), timeout=0.01)
        provider.cancel(token)

        await asyncio.sleep(0.05)
        assert ran == []
        assert provider.pending == 0


class TestProcessBatches:
    """Tests for batched processing with yields."""

    @pytest.mark.asyncio
    async def test_all_items_processed(self, scheduler: CooperativeScheduler) -> None:
        seen = []
        count = await scheduler.process_batches(range(25), seen.append, batch_size=10)

        assert count == 25
        assert seen == list(range(25))

    @pytest.mark.asyncio
    async def test_failing_item_does_not_abort(self, scheduler: CooperativeScheduler) -> None:
        seen = []

        def work(item: int) -> None:
            if item == 3:
                raise ValueError("bad item")
            seen.append(item)

        count = await scheduler.process_batches(range(6), work, batch_size=2)

        assert count == 5
        assert seen == [0, 1, 2, 4, 5]

    @pytest.mark.asyncio
    async def test_yields_between_batches(self, scheduler: CooperativeScheduler) -> None:
        """Other tasks get to run while a long batch job is in progress."""
        events = []
        asyncio.get_running_loop().call_soon(events.append, "other")

        await scheduler.process_batches(range(4), lambda i: events.append(i), batch_size=2)

        assert events.index("other") <= 2

    @pytest.mark.asyncio
    async def test_async_work(self, scheduler: CooperativeScheduler) -> None:
        seen = []

        async def work(item: int) -> None:
            seen.append(item)

        assert await scheduler.process_batches([1, 2, 3], work) == 3
        assert seen == [1, 2, 3]


class TestThrottleToFrame:
    """Tests for per-frame throttling."""

    @pytest.mark.asyncio
    async def test_one_call_per_frame(self) -> None:
        scheduler = CooperativeScheduler(frame_interval=0.01)
        calls = []
        throttled = scheduler.throttle_to_frame(lambda value: calls.append(value))

        throttled("first")
        throttled("second")
        throttled("third")
        await asyncio.sleep(0.05)

        assert calls == ["first"]

    @pytest.mark.asyncio
    async def test_next_frame_accepts_new_call(self) -> None:
        scheduler = CooperativeScheduler(frame_interval=0.01)
        calls = []
        throttled = scheduler.throttle_to_frame(calls.append)

        throttled(1)
        await asyncio.sleep(0.05)
        throttled(2)
        await asyncio.sleep(0.05)

        assert calls == [1, 2]

    @pytest.mark.asyncio
    async def test_destroy_makes_inert(self) -> None:
        scheduler = CooperativeScheduler(frame_interval=0.01)
        calls = []
        throttled = scheduler.throttle_to_frame(calls.append)

        throttled(1)
        throttled.destroy()
        throttled(2)
        await asyncio.sleep(0.05)

        assert calls == []
        assert throttled.destroyed

    @pytest.mark.asyncio
    async def test_failing_fn_is_isolated(self) -> None:
        scheduler = CooperativeScheduler(frame_interval=0.01)

        def boom() -> None:
            raise RuntimeError("frame boom")

        throttled = scheduler.throttle_to_frame(boom)
        throttled()
        await asyncio.sleep(0.05)
        throttled()
        await asyncio.sleep(0.05)

        assert not throttled.destroyed


class TestScheduleWithRetry:
    """Tests for retry with linear backoff."""

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self, scheduler: CooperativeScheduler) -> None:
        attempts = []

        def flaky() -> None:
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("not yet")

        handle = scheduler.schedule_with_retry(flaky, max_retries=3, backoff=0.01)
        assert await scheduler.drain(2.0)

        assert len(attempts) == 3
        assert handle.state is TaskState.DONE

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, scheduler: CooperativeScheduler) -> None:
        """max_retries counts total attempts."""
        attempts = []

        def always_fails() -> None:
            attempts.append(1)
            raise ConnectionError("down")

        scheduler.schedule_with_retry(always_fails, max_retries=3, backoff=0.01)
        assert await scheduler.drain(2.0)

        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_async_callback_retried(self, scheduler: CooperativeScheduler) -> None:
        attempts = []

        async def flaky() -> None:
            attempts.append(1)
            if len(attempts) == 1:
                raise TimeoutError("slow")

        scheduler.schedule_with_retry(flaky, max_retries=2, backoff=0.01)
        assert await scheduler.drain(2.0)

        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_cancel_before_first_attempt(self, scheduler: CooperativeScheduler) -> None:
        attempts = []
        handle = scheduler.schedule_with_retry(lambda: attempts.append(1), backoff=0.01)
        scheduler.cancel(handle)

        await asyncio.sleep(0.05)
        assert attempts == []


class TestDrain:
    """Tests for drain()."""

    @pytest.mark.asyncio
    async def test_empty_scheduler_drains_immediately(
        self, scheduler: CooperativeScheduler
    ) -> None:
        assert await scheduler.drain(0.1)

    @pytest.mark.asyncio
    async def test_drain_times_out(self, scheduler: CooperativeScheduler) -> None:
        async def slow() -> None:
            await asyncio.sleep(1.0)

        scheduler.schedule(slow)
        assert await scheduler.drain(0.05) is False
        scheduler.close()
        await asyncio.sleep(0.01)
