from __future__ import annotations

import pytest

from ts_node.errors import InvalidPoint, StoreUnavailable
from utils.concurrency import Deadline, instrument_lock, retry_with_backoff


def test_instrument_lock_is_per_instrument():
    assert instrument_lock(1) is instrument_lock(1)
    assert instrument_lock(1) is not instrument_lock(2)


def test_deadline_coerce():
    assert Deadline.coerce(None) is None
    d = Deadline(60)
    assert Deadline.coerce(d) is d
    assert not Deadline.coerce(60).expired()
    assert Deadline.coerce(0).expired()
    assert Deadline(-5).remaining() == 0.0


def test_retry_until_success():
    calls = []
    sleeps = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StoreUnavailable("busy")
        return "ok"

    assert retry_with_backoff(flaky, attempts=5, sleep=sleeps.append) == "ok"
    assert len(calls) == 3
    assert len(sleeps) == 2
    assert sleeps[1] >= sleeps[0] * 0.5


def test_retry_gives_up():
    def always_busy():
        raise StoreUnavailable("busy")

    with pytest.raises(StoreUnavailable):
        retry_with_backoff(always_busy, attempts=2, sleep=lambda _: None)


def test_non_retryable_errors_propagate_immediately():
    calls = []

    def bad_input():
        calls.append(1)
        raise InvalidPoint("no value")

    with pytest.raises(InvalidPoint):
        retry_with_backoff(bad_input, attempts=5, sleep=lambda _: None)
    assert len(calls) == 1


def test_retry_attempts_from_env(monkeypatch):
    calls = []

    def always_busy():
        calls.append(1)
        raise StoreUnavailable("busy")

    monkeypatch.setenv("TS_RETRY_ATTEMPTS", "4")
    with pytest.raises(StoreUnavailable):
        retry_with_backoff(always_busy, sleep=lambda _: None)
    assert len(calls) == 4

    calls.clear()
    monkeypatch.setenv("TS_RETRY_ATTEMPTS", "many")
    with pytest.raises(StoreUnavailable):
        retry_with_backoff(always_busy, sleep=lambda _: None)
    assert len(calls) == 3
