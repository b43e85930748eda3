"""
Query engine for the sensor node.

Implements:
- Time-window queries (explicit start/end, inclusive)
- "last" queries (most recent point only)
- "since" queries (points after a watermark, capped)
- Multi-variable fan-out, keyed by variable shortname

Multi-variable results are read inside one store snapshot so every variable
reflects the same committed state. Every query runs under a deadline; an
exceeded deadline raises DeadlineExceeded instead of running unbounded.
"""

from __future__ import annotations

from typing import Iterable, Optional, Union

from loguru import logger

from utils.concurrency import Deadline
from .db import Instrument, Measurement, PointStore
from .durations import EPOCH_MS_MAX, clamp_epoch_ms, now_ms, parse_duration, to_epoch_ms
from .errors import NoSuchVariable

TimeLike = Union[int, float, str, None]

DAY_MS = 86_400_000


class QueryEngine:
    """Read-side front door over the point store."""

    def __init__(
        self,
        store: PointStore,
        default_timeout_seconds: Optional[float] = None,
        default_window: str = "1d",
    ):
        """
        Args:
            store: Point store to read from
            default_timeout_seconds: Deadline applied when a caller gives none
            default_window: Lookback used when a query has no bounds
        """
        self.store = store
        self.default_timeout_seconds = default_timeout_seconds
        window = parse_duration(default_window)
        self.default_window_ms = int(window.total_seconds() * 1000) if window else DAY_MS

    def _deadline(self, deadline) -> Optional[Deadline]:
        deadline = Deadline.coerce(deadline)
        if deadline is None and self.default_timeout_seconds:
            deadline = Deadline(self.default_timeout_seconds)
        return deadline

    @staticmethod
    def _check_variable(instrument: Instrument, variable: str) -> None:
        if instrument.find_variable(variable) is None:
            raise NoSuchVariable(instrument.id, variable)

    def _variables(self, instrument: Instrument, variables: Optional[Iterable[str]]) -> list[str]:
        if variables is None:
            return instrument.shortnames
        names = list(variables)
        for name in names:
            self._check_variable(instrument, name)
        return names

    # -------------------------------------------------------------------------
    # Single-variable queries
    # -------------------------------------------------------------------------

    def window(
        self,
        instrument_id: int,
        variable: str,
        start_ms: int,
        end_ms: int,
        deadline=None,
    ) -> list[Measurement]:
        """Points in [start_ms, end_ms], ascending. Empty range → []."""
        instrument = self.store.get_instrument(instrument_id)
        self._check_variable(instrument, variable)
        return self.store.range_query(instrument_id, variable, start_ms, end_ms, deadline=self._deadline(deadline))

    def last(self, instrument_id: int, variable: str, deadline=None) -> list[Measurement]:
        """Most recent point only, as a list of at most one."""
        instrument = self.store.get_instrument(instrument_id)
        self._check_variable(instrument, variable)
        point = self.store.last_point(instrument_id, variable, deadline=self._deadline(deadline))
        return [point] if point else []

    def since(
        self,
        instrument_id: int,
        variable: str,
        after_ms: int,
        limit: Optional[int] = None,
        deadline=None,
    ) -> list[Measurement]:
        """
        Points strictly after ``after_ms``, ascending.

        ``limit`` defaults to the variable's display cap.
        """
        instrument = self.store.get_instrument(instrument_id)
        self._check_variable(instrument, variable)
        if limit is None:
            limit = instrument.display_points_for(variable)
        return self.store.tail_query(instrument_id, variable, after_ms, limit, deadline=self._deadline(deadline))

    # -------------------------------------------------------------------------
    # Multi-variable queries
    # -------------------------------------------------------------------------

    def fan_out(
        self,
        instrument_id: int,
        start_ms: int,
        end_ms: int,
        variables: Optional[Iterable[str]] = None,
        deadline=None,
    ) -> dict[str, list[Measurement]]:
        """One window query per variable, keyed by shortname."""
        instrument = self.store.get_instrument(instrument_id)
        names = self._variables(instrument, variables)

        out: dict[str, list[Measurement]] = {}
        with self.store.snapshot(self._deadline(deadline)):
            for name in names:
                out[name] = self.store.range_query(instrument_id, name, start_ms, end_ms)
        return out

    def instrument_window(
        self,
        instrument_id: int,
        start_ms: int,
        end_ms: int,
        deadline=None,
    ) -> list[Measurement]:
        """All variables interleaved by timestamp; equal timestamps keep insertion order."""
        self.store.get_instrument(instrument_id)
        return self.store.instrument_range_query(instrument_id, start_ms, end_ms, deadline=self._deadline(deadline))

    # -------------------------------------------------------------------------
    # GET-style entry point
    # -------------------------------------------------------------------------

    def query(
        self,
        instrument_id: int,
        variable: Optional[str] = None,
        start: TimeLike = None,
        end: TimeLike = None,
        after: TimeLike = None,
        limit: Optional[int] = None,
        last: bool = False,
        deadline=None,
    ) -> Union[list[Measurement], dict[str, list[Measurement]]]:
        """
        Answer {instrument_id, variable?, start?, end?, after?, limit?, last?}.

        Precedence: ``last``, then ``after`` (tail query), then the window.
        A missing window defaults to the day ending at ``end`` (or now).
        Times are epoch ms or ISO-8601 strings.

        Returns:
            Ordered list when ``variable`` is given, else {shortname: list}

        Raises:
            NoSuchInstrument, NoSuchVariable, DeadlineExceeded, ValueError (bad time)
        """
        instrument = self.store.get_instrument(instrument_id)
        names = [variable] if variable is not None else instrument.shortnames
        for name in names:
            self._check_variable(instrument, name)

        if limit is not None and not 0 <= limit <= EPOCH_MS_MAX:
            raise ValueError(f"limit out of range, got {limit}")

        deadline = self._deadline(deadline)
        out: dict[str, list[Measurement]] = {}

        if last:
            with self.store.snapshot(deadline):
                for name in names:
                    point = self.store.last_point(instrument_id, name)
                    out[name] = [point] if point else []

        elif after is not None:
            after_ms = to_epoch_ms(after)
            with self.store.snapshot(deadline):
                for name in names:
                    cap = limit if limit is not None else instrument.display_points_for(name)
                    out[name] = self.store.tail_query(instrument_id, name, after_ms, cap)

        else:
            end_ms = to_epoch_ms(end) if end is not None else now_ms()
            start_ms = to_epoch_ms(start) if start is not None else clamp_epoch_ms(end_ms - self.default_window_ms)
            with self.store.snapshot(deadline):
                for name in names:
                    points = self.store.range_query(instrument_id, name, start_ms, end_ms)
                    out[name] = points[:limit] if limit is not None else points

        logger.debug(
            f"Query instrument={instrument_id} var={variable} "
            f"returned {sum(len(v) for v in out.values())} points"
        )

        if variable is not None:
            return out[variable]
        return out
