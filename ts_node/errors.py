"""
Error taxonomy for the sensor time-series node.

Client errors (bad input, unknown instrument/variable) are never retried.
Store errors (busy database, exceeded deadline) are transient and carry
``retryable = True`` so callers can back off and try again.
"""

from __future__ import annotations

from typing import Optional


class TSNodeError(Exception):
    """Base class for all node errors."""

    code = "TSNodeError"
    retryable = False


class InvalidPoint(TSNodeError):
    """Malformed point: missing or non-finite timestamp/value."""

    code = "InvalidPoint"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class UnknownVariable(TSNodeError):
    """Point references a variable the instrument does not own."""

    code = "UnknownVariable"

    def __init__(self, instrument_id: int, variable: str):
        super().__init__(f"Instrument {instrument_id} has no variable '{variable}'")
        self.instrument_id = instrument_id
        self.variable = variable


class NoSuchInstrument(TSNodeError):
    code = "NoSuchInstrument"

    def __init__(self, instrument_id):
        super().__init__(f"No such instrument: {instrument_id}")
        self.instrument_id = instrument_id


class NoSuchVariable(TSNodeError):
    code = "NoSuchVariable"

    def __init__(self, instrument_id: int, variable: str):
        super().__init__(f"No such variable '{variable}' on instrument {instrument_id}")
        self.instrument_id = instrument_id
        self.variable = variable


class StoreUnavailable(TSNodeError):
    """The backing store is locked, busy or unreachable."""

    code = "StoreUnavailable"
    retryable = True


class DeadlineExceeded(TSNodeError):
    """A query did not finish before its deadline."""

    code = "DeadlineExceeded"
    retryable = True
