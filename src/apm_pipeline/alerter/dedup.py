"""Time-windowed fingerprint cache for alert deduplication."""

import asyncio
import hashlib
from collections import Counter

import structlog

from apm_pipeline.scheduler import CooperativeScheduler

log = structlog.get_logger()

DEFAULT_SWEEP_INTERVAL = 60.0  # seconds


def metric_fingerprint(name: str, value: float, bucket: float = 100) -> str:
    """Coarse key for a metric: name plus value floored to ``bucket``.

    Similar readings (3510ms, 3580ms) collapse into one suppressed stream.
    """
    bucketed = int(value // bucket * bucket) if bucket > 0 else value
    return f"metric:{name}:{bucketed}"


def error_fingerprint(error_type: str, message: str, component: str | None = None) -> str:
    """Key for an error: type, component and a digest of the normalized message."""
    normalized = " ".join(message.split())[:200].lower()
    digest = hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:12]
    return f"error:{error_type}:{component or 'unknown'}:{digest}"


class DedupCache:
    """Set of fingerprints handled within the current sweep window.

    There is no per-entry expiry: the whole cache is cleared every
    ``sweep_interval`` seconds. The sweep itself is submitted to the scheduler
    so it runs at idle time.
    """

    def __init__(
        self,
        scheduler: CooperativeScheduler,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        self.scheduler = scheduler
        self.sweep_interval = sweep_interval
        self._fingerprints: set[str] = set()
        self._hits: Counter[str] = Counter()
        self._timer: asyncio.TimerHandle | None = None

    def __len__(self) -> int:
        return len(self._fingerprints)

    def seen(self, fingerprint: str) -> bool:
        """True if the fingerprint was remembered since the last sweep."""
        return fingerprint in self._fingerprints

    def remember(self, fingerprint: str) -> None:
        self._fingerprints.add(fingerprint)

    def check_and_remember(self, fingerprint: str) -> bool:
        """Remember the fingerprint and report whether it was new.

        Repeated fingerprints are counted for stats().
        """
        if fingerprint in self._fingerprints:
            self._hits[fingerprint] += 1
            return False
        self._fingerprints.add(fingerprint)
        return True

    def sweep(self) -> int:
        """Clear the whole cache. Returns the number of fingerprints dropped."""
        cleared = len(self._fingerprints)
        suppressed = sum(self._hits.values())
        self._fingerprints.clear()
        self._hits.clear()
        if cleared:
            log.debug("Dedup cache swept", cleared=cleared, suppressed=suppressed)
        return cleared

    def stats(self, top: int = 10) -> dict[str, object]:
        """Summary of the current window."""
        return {
            "unique_fingerprints": len(self._fingerprints),
            "suppressed": sum(self._hits.values()),
            "top_suppressed": self._hits.most_common(top),
        }

    # ----- periodic sweep -----

    @property
    def running(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        """Arm the periodic sweep. Must be called from the event loop."""
        if self._timer is not None:
            return
        self._arm()
        log.debug("Dedup sweep started", interval=self.sweep_interval)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.sweep_interval, self._on_timer)

    def _on_timer(self) -> None:
        self.scheduler.schedule(self.sweep, name="dedup-sweep")
        self._arm()
