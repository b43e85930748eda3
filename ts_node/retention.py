"""
Retention for the sensor node.

Implements:
- RetentionManager: on-demand pruning of points older than now - retention
- RetentionLoop: background thread running the manager on a fixed interval

The cutoff is decided once per pass and deleted in small batches, so ingest
past the cutoff is never stalled and readers see each point either before or
after its deletion. A failed pass is logged and retried on the next cycle.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from loguru import logger

from .db import PointStore
from .durations import format_duration, now_ms, parse_duration

# Default pass interval (seconds)
DEFAULT_PRUNE_INTERVAL = 3600


@dataclass(frozen=True)
class RetentionPolicy:
    """Maximum age of stored points; duration None keeps data forever."""
    duration: Optional[timedelta] = None

    @classmethod
    def parse(cls, value: Union[str, int, float, timedelta, None]) -> "RetentionPolicy":
        return cls(duration=parse_duration(value))

    @property
    def infinite(self) -> bool:
        return self.duration is None

    def cutoff_ms(self, now: int) -> Optional[int]:
        if self.duration is None:
            return None
        return now - int(self.duration.total_seconds() * 1000)

    def __str__(self) -> str:
        return format_duration(self.duration)


@dataclass
class PruneReport:
    cutoff_ms: Optional[int]
    deleted: int
    started_at: datetime
    elapsed_seconds: float
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "cutoff_ms": self.cutoff_ms,
            "deleted": self.deleted,
            "started_at": self.started_at.isoformat(),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "skipped": self.skipped,
        }


class RetentionManager:
    """Deletes points older than the configured horizon."""

    def __init__(
        self,
        store: PointStore,
        policy: RetentionPolicy,
        batch_size: int = 5000,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Args:
            store: Point store to prune
            policy: Retention horizon (explicit, not read from global state)
            batch_size: Points deleted per write transaction
            clock: Epoch-ms clock (injectable for tests)
        """
        self.store = store
        self.policy = policy
        self.batch_size = batch_size
        self.clock = clock

    def prune(self, now: Optional[int] = None) -> PruneReport:
        """
        Run one pruning pass.

        Args:
            now: Reference time in epoch ms (default: clock())

        Returns:
            PruneReport; skipped=True when retention is infinite
        """
        started = datetime.now()
        t0 = time.monotonic()

        if self.policy.infinite:
            logger.debug("Retention is infinite, nothing to prune")
            return PruneReport(cutoff_ms=None, deleted=0, started_at=started, elapsed_seconds=0.0, skipped=True)

        cutoff = self.policy.cutoff_ms(self.clock() if now is None else now)
        deleted = self.store.prune_before(cutoff, batch_size=self.batch_size)
        elapsed = time.monotonic() - t0

        if deleted:
            logger.info(f"Pruned {deleted} points older than {cutoff} (retention {self.policy}) in {elapsed:.2f}s")
        else:
            logger.debug(f"No points older than {cutoff}")

        return PruneReport(cutoff_ms=cutoff, deleted=deleted, started_at=started, elapsed_seconds=elapsed)


class RetentionLoop:
    """
    Background loop that prunes on a fixed interval.

    Errors never escape the loop: they are logged and the next pass retries.
    """

    def __init__(
        self,
        manager: RetentionManager,
        interval_seconds: float = DEFAULT_PRUNE_INTERVAL,
    ):
        self.manager = manager
        self.interval_seconds = interval_seconds

        # Tracking
        self._last_report: Optional[PruneReport] = None
        self._last_error: Optional[str] = None
        self._last_tick: Optional[datetime] = None
        self._passes = 0
        self._failures = 0

        # Loop control
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> Optional[PruneReport]:
        """
        Run one pass.

        Returns:
            PruneReport, or None if the pass failed
        """
        self._last_tick = datetime.now()
        try:
            report = self.manager.prune()
        except Exception as e:
            self._failures += 1
            self._last_error = str(e)
            logger.exception(f"Retention pass failed, will retry next cycle: {e}")
            return None

        self._passes += 1
        self._last_report = report
        self._last_error = None
        return report

    def start(self, threaded: bool = True) -> None:
        """
        Start the retention loop.

        Args:
            threaded: If True, run in background thread
        """
        if self._thread and self._thread.is_alive():
            logger.warning("RetentionLoop already running")
            return
        self._running = True
        self._stop_event.clear()

        if threaded:
            self._thread = threading.Thread(target=self._run_loop, name="retention", daemon=True)
            self._thread.start()
            logger.info("RetentionLoop started in background thread")
        else:
            self._run_loop()

    def stop(self) -> None:
        """Stop the retention loop."""
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None
        logger.info("RetentionLoop stopped")

    def _run_loop(self) -> None:
        logger.info(
            f"RetentionLoop running (retention {self.manager.policy}, every {self.interval_seconds}s)"
        )

        while self._running:
            self.tick()
            if self._stop_event.wait(self.interval_seconds):
                break

        logger.info("RetentionLoop exiting")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_tick(self) -> Optional[datetime]:
        return self._last_tick

    def get_status(self) -> dict:
        """Get retention status for display."""
        return {
            "running": self._running,
            "retention": str(self.manager.policy),
            "interval_seconds": self.interval_seconds,
            "passes": self._passes,
            "failures": self._failures,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "last_report": self._last_report.to_dict() if self._last_report else None,
            "last_error": self._last_error,
        }
