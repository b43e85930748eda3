"""
Concurrency helpers for the sensor node.

Provides:
- InstrumentLockManager: one writer lock per instrument to serialize ingest
- Deadline: monotonic time budget carried by queries
- retry_with_backoff: caller-side retry for transient store errors
"""

from __future__ import annotations

import os
import random
import threading
import time
from typing import Callable, Dict, Optional, TypeVar, Union

from loguru import logger

T = TypeVar("T")


class InstrumentLockManager:
    """Process-local lock manager keyed by instrument id.

    A single logical writer per instrument keeps per-variable ordering intact,
    while writers for different instruments proceed independently.
    """

    def __init__(self) -> None:
        self._locks: Dict[int, threading.Lock] = {}
        self._global = threading.Lock()

    def lock_for(self, instrument_id: int) -> threading.Lock:
        with self._global:
            lk = self._locks.get(instrument_id)
            if lk is None:
                lk = threading.Lock()
                self._locks[instrument_id] = lk
            return lk

    def forget(self, instrument_id: int) -> None:
        with self._global:
            self._locks.pop(instrument_id, None)


_ILM = InstrumentLockManager()


def instrument_lock(instrument_id: int) -> threading.Lock:
    """Get the process-local writer lock for an instrument."""
    return _ILM.lock_for(instrument_id)


def forget_instrument_lock(instrument_id: int) -> None:
    """Drop the lock of a deleted instrument."""
    _ILM.forget(instrument_id)


class Deadline:
    """Absolute deadline on the monotonic clock."""

    __slots__ = ("expires_at",)

    def __init__(self, seconds: float):
        self.expires_at = time.monotonic() + max(0.0, float(seconds))

    @classmethod
    def coerce(cls, value: Union["Deadline", float, int, None]) -> Optional["Deadline"]:
        """Accept a Deadline, a budget in seconds, or None (no deadline)."""
        if value is None or isinstance(value, Deadline):
            return value
        return cls(float(value))

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining():.3f}s)"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def retry_with_backoff(
    fn: Callable[[], T],
    attempts: Optional[int] = None,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` and retry on errors flagged ``retryable``.

    Exponential backoff with jitter between attempts. Non-retryable errors and
    the final retryable failure propagate unchanged.

    Env: TS_RETRY_ATTEMPTS (default 3)
    """
    if attempts is None:
        attempts = _int_env("TS_RETRY_ATTEMPTS", 3)

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            if not getattr(e, "retryable", False) or attempt >= attempts:
                raise
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            delay += random.uniform(0, delay / 2)
            logger.debug(f"Retryable {type(e).__name__} (attempt {attempt}/{attempts}), sleeping {delay:.3f}s")
            sleep(delay)
