"""
Live feed for polling clients.

A live view polls repeatedly with the last timestamp it has seen:
- first poll (no watermark): the most recent display_points points, reaching
  back at most the instrument's plot offset from its last point
- later polls: only points after the watermark, capped at display_points

The server keeps no per-client state; each answer is a function of the
watermark and the current store contents. The response carries a
refresh_msecs hint so the client can pace itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from utils.concurrency import Deadline
from .db import Instrument, Measurement, PointStore
from .durations import check_epoch_ms, clamp_epoch_ms, offset_ms
from .errors import NoSuchVariable


class LivePhase(str, Enum):
    AWAITING_FIRST_POLL = "AWAITING_FIRST_POLL"
    POLLING = "POLLING"


def phase_for(after_ms: Optional[int]) -> LivePhase:
    """A missing or zero watermark means the client has seen nothing yet."""
    if not after_ms:
        return LivePhase.AWAITING_FIRST_POLL
    return LivePhase.POLLING


@dataclass
class LiveData:
    """Answer to one live poll."""
    display_points: int
    refresh_msecs: int
    points: list[Measurement] = field(default_factory=list)
    multivariable_points: dict[str, list[Measurement]] = field(default_factory=dict)
    multivariable_names: list[str] = field(default_factory=list)
    phase: LivePhase = LivePhase.AWAITING_FIRST_POLL

    @property
    def watermark_ms(self) -> Optional[int]:
        """Newest timestamp in this answer; the client's next ``after``."""
        candidates = [p.timestamp_ms for p in self.points]
        for pts in self.multivariable_points.values():
            candidates.extend(p.timestamp_ms for p in pts)
        return max(candidates) if candidates else None

    def to_dict(self) -> dict:
        """JSON shape: points as [timestamp_ms, value] pairs."""
        return {
            "points": [[p.timestamp_ms, p.value] for p in self.points],
            "multivariable_points": {
                name: [[p.timestamp_ms, p.value] for p in pts]
                for name, pts in self.multivariable_points.items()
            },
            "multivariable_names": list(self.multivariable_names),
            "display_points": self.display_points,
            "refresh_msecs": self.refresh_msecs,
            "watermark_ms": self.watermark_ms,
        }


class LiveFeed:
    """Stateless live poll handler."""

    def __init__(self, store: PointStore, default_timeout_seconds: Optional[float] = None):
        self.store = store
        self.default_timeout_seconds = default_timeout_seconds

    def _deadline(self, deadline) -> Optional[Deadline]:
        deadline = Deadline.coerce(deadline)
        if deadline is None and self.default_timeout_seconds:
            deadline = Deadline(self.default_timeout_seconds)
        return deadline

    def poll(
        self,
        instrument_id: int,
        variable: Optional[str] = None,
        after_ms: Optional[int] = None,
        deadline=None,
    ) -> LiveData:
        """
        Answer a live poll.

        Args:
            instrument_id: Instrument to watch
            variable: One shortname, or None for every variable
            after_ms: Client watermark (epoch ms); None/0 on the first poll
            deadline: Seconds or Deadline; defaults to default_timeout_seconds

        Returns:
            LiveData; ``points`` when ``variable`` is given, else the
            per-variable map and names

        Raises:
            NoSuchInstrument, NoSuchVariable, DeadlineExceeded,
            ValueError (watermark out of range)
        """
        if after_ms is not None:
            check_epoch_ms(after_ms)
        instrument = self.store.get_instrument(instrument_id)
        if variable is not None and instrument.find_variable(variable) is None:
            raise NoSuchVariable(instrument.id, variable)

        phase = phase_for(after_ms)
        data = LiveData(
            display_points=instrument.display_points_for(variable) if variable is not None else instrument.display_points,
            refresh_msecs=instrument.refresh_rate_ms,
            phase=phase,
        )

        with self.store.snapshot(self._deadline(deadline)):
            since_ms = self._first_poll_start(instrument) if phase == LivePhase.AWAITING_FIRST_POLL else None

            if variable is not None:
                data.points = self._fetch(instrument, variable, phase, after_ms, since_ms)
            else:
                for name in instrument.shortnames:
                    data.multivariable_names.append(name)
                    data.multivariable_points[name] = self._fetch(instrument, name, phase, after_ms, since_ms)

        return data

    def _first_poll_start(self, instrument: Instrument) -> Optional[int]:
        """Last point time minus the plot offset; None if there is no data."""
        last_ts = self.store.last_timestamp(instrument.id)
        if last_ts is None:
            return None
        return clamp_epoch_ms(last_ts - offset_ms(instrument.plot_offset_value, instrument.plot_offset_units))

    def _fetch(
        self,
        instrument: Instrument,
        variable: str,
        phase: LivePhase,
        after_ms: Optional[int],
        since_ms: Optional[int],
    ) -> list[Measurement]:
        cap = instrument.display_points_for(variable)
        if phase == LivePhase.POLLING:
            return self.store.tail_query(instrument.id, variable, after_ms, cap)
        if since_ms is None:
            return []
        return self.store.latest(instrument.id, variable, cap, since_ms=since_ms)


class LiveCursor:
    """
    Client-side watermark tracking over a LiveFeed.

    Holds only what a browser would hold: the last timestamp received.
    """

    def __init__(self, feed: LiveFeed, instrument_id: int, variable: Optional[str] = None):
        self.feed = feed
        self.instrument_id = instrument_id
        self.variable = variable
        self.watermark_ms: Optional[int] = None

    @property
    def phase(self) -> LivePhase:
        return phase_for(self.watermark_ms)

    def poll(self) -> LiveData:
        data = self.feed.poll(self.instrument_id, self.variable, self.watermark_ms)
        newest = data.watermark_ms
        if newest is not None and (self.watermark_ms is None or newest > self.watermark_ms):
            self.watermark_ms = newest
        return data
