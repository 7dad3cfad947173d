"""Cooperative scheduler for deferred pipeline work.

Everything the pipeline does after a host call returns (persistence, alert
creation, notification, cache sweeps) is submitted here. The scheduler runs
on the host's asyncio event loop and never starts threads: work is
interleaved with the host's own callbacks at idle time.

Every surface is failure-isolated. A callback that raises is logged and
dropped; it never reaches the caller and never cancels unrelated tasks.
"""

import asyncio
import functools
import inspect
import itertools
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import structlog

from apm_pipeline.metrics import SCHEDULER_ACTIVE, SCHEDULER_TASKS

log = structlog.get_logger()

Callback = Callable[[], Any]

DEFAULT_IDLE_TIMEOUT = 1.0  # seconds before idle work is forced to run
DEFAULT_FRAME_INTERVAL = 1 / 60  # 60fps


class TaskState(Enum):
    """Lifecycle of a scheduled task."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(eq=False)
class TaskHandle:
    """Reference to a scheduled task, used for cancellation."""

    task_id: int
    name: str
    state: TaskState = TaskState.PENDING
    token: Any = field(default=None, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.state is TaskState.CANCELLED

    @property
    def finished(self) -> bool:
        return self.state in (TaskState.DONE, TaskState.FAILED, TaskState.CANCELLED)


class IdleProvider(Protocol):
    """An idle-time primitive: run a callback when the runtime is idle.

    ``timeout`` forces the callback to run even if the runtime never goes idle.
    """

    def request(self, callback: Callable[[], None], timeout: float) -> Any: ...

    def cancel(self, token: Any) -> None: ...


@dataclass(eq=False)
class _IdleRequest:
    callback: Callable[[], None]
    deadline: float
    cancelled: bool = False


class EventLoopIdleProvider:
    """Idle detection for CPython's default event loop.

    The loop counts as idle when its ready queue holds no other callbacks.
    Requests are served FIFO while idle, up to ``budget`` seconds per poll,
    and any request past its deadline runs regardless.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        poll_interval: float = 0.005,
        budget: float = 0.010,
    ):
        self._loop = loop
        self._poll_interval = poll_interval
        self._budget = budget
        self._queue: deque[_IdleRequest] = deque()
        self._timer: asyncio.Handle | None = None

    @staticmethod
    def supported(loop: asyncio.AbstractEventLoop) -> bool:
        """True when the loop exposes a ready queue we can inspect."""
        # NOTE: _ready is private to asyncio.BaseEventLoop. Loops without it
        # (uvloop) fall back to next-tick scheduling.
        return isinstance(getattr(loop, "_ready", None), deque)

    def request(self, callback: Callable[[], None], timeout: float) -> _IdleRequest:
        req = _IdleRequest(callback=callback, deadline=self._loop.time() + timeout)
        self._queue.append(req)
        self._arm(0.0)
        return req

    def cancel(self, token: _IdleRequest) -> None:
        token.cancelled = True

    @property
    def pending(self) -> int:
        return sum(1 for req in self._queue if not req.cancelled)

    def _is_idle(self) -> bool:
        ready = getattr(self._loop, "_ready", None)
        return ready is None or len(ready) == 0

    def _arm(self, delay: float) -> None:
        if self._timer is not None:
            return
        if delay > 0:
            self._timer = self._loop.call_later(delay, self._poll)
        else:
            self._timer = self._loop.call_soon(self._poll)

    def _poll(self) -> None:
        self._timer = None
        idle = self._is_idle()
        budget_end = self._loop.time() + self._budget

        # Requests added by callbacks below wait for the next poll.
        batch, self._queue = self._queue, deque()
        deferred: deque[_IdleRequest] = deque()
        while batch:
            req = batch.popleft()
            if req.cancelled:
                continue
            now = self._loop.time()
            if now >= req.deadline or (idle and now < budget_end):
                try:
                    req.callback()
                except Exception:
                    log.exception("Idle callback failed")
            else:
                deferred.append(req)

        deferred.extend(self._queue)
        self._queue = deferred
        if self._queue:
            self._arm(self._poll_interval)


def _callback_name(callback: Callable[..., Any]) -> str:
    if isinstance(callback, functools.partial):
        return _callback_name(callback.func)
    return getattr(callback, "__qualname__", None) or repr(callback)


class CooperativeScheduler:
    """Runs deferred work on the event loop during idle time.

    One instance is created at startup and passed to every pipeline component.
    The active-task registry lives here; no locking is needed because all
    access happens on the loop thread.
    """

    def __init__(
        self,
        idle_provider: IdleProvider | None = None,
        prefer_idle: bool = True,
        frame_interval: float = DEFAULT_FRAME_INTERVAL,
    ):
        """Initialize the scheduler.

        Args:
            idle_provider: Idle-time primitive to use. When omitted, an
                EventLoopIdleProvider is created if the loop supports one.
            prefer_idle: Set False to always use next-tick scheduling
            frame_interval: Frame length in seconds for throttle_to_frame
        """
        self._idle = idle_provider
        self._auto_idle = idle_provider is None and prefer_idle
        self.frame_interval = frame_interval
        self._loop: asyncio.AbstractEventLoop | None = None
        self._active: dict[int, TaskHandle] = {}
        self._ids = itertools.count(1)
        self._background: set[asyncio.Future] = set()

    @property
    def active_count(self) -> int:
        """Number of tasks scheduled or running."""
        return len(self._active)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._loop = loop
            if self._auto_idle:
                self._idle = (
                    EventLoopIdleProvider(loop) if EventLoopIdleProvider.supported(loop) else None
                )
        return loop

    def _register(self, handle: TaskHandle) -> None:
        self._active[handle.task_id] = handle
        SCHEDULER_ACTIVE.set(len(self._active))

    def _finish(self, handle: TaskHandle, state: TaskState) -> None:
        handle.state = state
        self._active.pop(handle.task_id, None)
        SCHEDULER_ACTIVE.set(len(self._active))
        status = {
            TaskState.DONE: "completed",
            TaskState.FAILED: "failed",
            TaskState.CANCELLED: "cancelled",
        }[state]
        SCHEDULER_TASKS.labels(status=status).inc()

    # ----- scheduling -----

    def schedule(
        self,
        callback: Callback,
        timeout: float = DEFAULT_IDLE_TIMEOUT,
        name: str | None = None,
    ) -> TaskHandle:
        """Run ``callback`` at the next idle period (or next tick).

        The callback may return an awaitable, which is then awaited as a task.

        Args:
            callback: Zero-argument callable
            timeout: Seconds after which idle work is forced to run
            name: Task name used in logs (default: callback's qualified name)

        Returns:
            Handle usable with cancel()
        """
        handle = TaskHandle(task_id=next(self._ids), name=name or _callback_name(callback))
        try:
            loop = self._get_loop()
        except RuntimeError:
            log.error("No running event loop, task dropped", task=handle.name)
            handle.state = TaskState.CANCELLED
            return handle

        self._register(handle)
        runner = functools.partial(self._run, handle, callback)
        if self._idle is not None:
            handle.token = self._idle.request(runner, timeout)
        else:
            handle.token = loop.call_soon(runner)
        return handle

    def cancel(self, handle: TaskHandle) -> None:
        """Cancel a task that has not started yet. Idempotent."""
        if handle.state is not TaskState.PENDING:
            return
        token = handle.token
        if isinstance(token, asyncio.Handle):
            token.cancel()
        elif token is not None and self._idle is not None:
            self._idle.cancel(token)
        self._finish(handle, TaskState.CANCELLED)
        log.debug("Task cancelled", task=handle.name)

    def _run(self, handle: TaskHandle, callback: Callback) -> None:
        if handle.state is not TaskState.PENDING:
            return
        handle.state = TaskState.RUNNING
        try:
            result = callback()
        except Exception:
            log.exception("Scheduled task failed", task=handle.name)
            self._finish(handle, TaskState.FAILED)
            return

        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._background.add(future)
            future.add_done_callback(functools.partial(self._on_future_done, handle))
            return

        self._finish(handle, TaskState.DONE)

    def _on_future_done(self, handle: TaskHandle, future: asyncio.Future) -> None:
        self._background.discard(future)
        if future.cancelled():
            self._finish(handle, TaskState.CANCELLED)
            return
        exc = future.exception()
        if exc is not None:
            log.error("Scheduled task failed", task=handle.name, error=str(exc), exc_info=exc)
            self._finish(handle, TaskState.FAILED)
            return
        self._finish(handle, TaskState.DONE)

    # ----- cooperative primitives -----

    async def yield_control(self) -> None:
        """Give the event loop a chance to run other pending work."""
        await asyncio.sleep(0)

    async def process_batches(
        self,
        items: Iterable[Any],
        work: Callable[[Any], Any],
        batch_size: int = 10,
    ) -> int:
        """Apply ``work`` to every item, yielding after each batch.

        A failing item is logged and skipped.

        Returns:
            Number of items processed without error
        """
        batch_size = max(1, batch_size)
        succeeded = 0
        in_batch = 0
        try:
            for item in items:
                try:
                    result = work(item)
                    if inspect.isawaitable(result):
                        await result
                    succeeded += 1
                except Exception:
                    log.exception("Batch item failed", work=_callback_name(work))

                in_batch += 1
                if in_batch >= batch_size:
                    in_batch = 0
                    await self.yield_control()
        except Exception:
            log.exception("Batch iteration failed", work=_callback_name(work))
        return succeeded

    def throttle_to_frame(self, fn: Callable[..., Any]) -> "FrameThrottle":
        """Wrap ``fn`` so it runs at most once per frame."""
        return FrameThrottle(self, fn)

    def schedule_with_retry(
        self,
        callback: Callback,
        max_retries: int = 3,
        backoff: float = 1.0,
        timeout: float = DEFAULT_IDLE_TIMEOUT,
        name: str | None = None,
    ) -> TaskHandle:
        """Schedule ``callback`` and retry it with linear backoff on failure.

        Args:
            callback: Zero-argument callable, may return an awaitable
            max_retries: Total number of attempts
            backoff: Base delay in seconds; attempt N waits backoff * N
            timeout: Idle timeout for the first attempt
            name: Task name used in logs
        """
        task_name = name or _callback_name(callback)
        attempts = functools.partial(
            self._run_with_retry, callback, max(1, max_retries), backoff, task_name
        )
        return self.schedule(attempts, timeout=timeout, name=task_name)

    async def _run_with_retry(
        self, callback: Callback, max_retries: int, backoff: float, name: str
    ) -> None:
        for attempt in range(1, max_retries + 1):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                if attempt >= max_retries:
                    log.error(
                        "Task failed after retries, giving up",
                        task=name,
                        attempts=attempt,
                        error=str(e),
                    )
                    return
                delay = backoff * attempt
                log.warning(
                    "Task failed, retrying",
                    task=name,
                    attempt=attempt,
                    retry_in=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
            else:
                if attempt > 1:
                    log.info("Task succeeded after retry", task=name, attempt=attempt)
                return

    # ----- lifecycle -----

    async def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every registered task has finished.

        Returns:
            True if the registry emptied before the timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._active:
            if loop.time() >= deadline:
                log.warning("Scheduler drain timed out", active=len(self._active))
                return False
            await asyncio.sleep(0.001)
        return True

    def close(self) -> None:
        """Cancel all pending tasks and any running coroutine tasks."""
        for handle in list(self._active.values()):
            self.cancel(handle)
        for future in list(self._background):
            future.cancel()
        log.debug("Scheduler closed")


class FrameThrottle:
    """Callable wrapper that allows one invocation per frame.

    Calls made while an invocation is pending are dropped, not queued; the
    first call's arguments are used.
    """

    def __init__(self, scheduler: CooperativeScheduler, fn: Callable[..., Any]):
        self._scheduler = scheduler
        self._fn = fn
        self._pending: asyncio.TimerHandle | None = None
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        if self._destroyed or self._pending is not None:
            return
        try:
            loop = self._scheduler._get_loop()
        except RuntimeError:
            log.error("No running event loop, frame call dropped", fn=_callback_name(self._fn))
            return
        self._pending = loop.call_later(
            self._scheduler.frame_interval, self._fire, args, kwargs
        )

    def _fire(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        self._pending = None
        if self._destroyed:
            return
        try:
            self._fn(*args, **kwargs)
        except Exception:
            log.exception("Frame callback failed", fn=_callback_name(self._fn))

    def destroy(self) -> None:
        """Make the wrapper permanently inert."""
        self._destroyed = True
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
