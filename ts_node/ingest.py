"""
Ingest writer for the sensor node.

Implements:
- Batch ingest: {instrument_id, points: [{variable, timestamp_ms, value}, ...]}
- URL-style ingest: instrument_id=1&temp=21.5&rh=40&at=2024-01-01T00:00:00Z

Points are checked one by one against the instrument's variables; bad points
are itemized in the result and the rest are written in a single store
transaction under the instrument's writer lock. A store failure writes
nothing and propagates as StoreUnavailable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from loguru import logger

from utils.concurrency import instrument_lock
from .db import Measurement, PointStore, validate_point
from .durations import now_ms, to_epoch_ms
from .errors import InvalidPoint, StoreUnavailable, UnknownVariable

# Query parameters of a URL ingest that are not variable shortnames
RESERVED_PARAMS = frozenset({"instrument_id", "at", "key", "test", "email", "api_key"})

# Credentials that never leave the ingest request
SECRET_PARAMS = frozenset({"key", "api_key", "email"})


def sanitize_url(url: str) -> str:
    """Drop credential parameters from a URL's query string."""
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in SECRET_PARAMS]
    return urlunsplit(parts._replace(query=urlencode(kept)))


@dataclass
class IngestBatch:
    """Points for one instrument."""
    instrument_id: int
    points: list = field(default_factory=list)

    @classmethod
    def coerce(cls, batch: Union["IngestBatch", Mapping[str, Any]]) -> "IngestBatch":
        if isinstance(batch, IngestBatch):
            return batch
        if "instrument_id" not in batch:
            raise InvalidPoint("batch is missing instrument_id", field="instrument_id")
        instrument_id = batch["instrument_id"]
        if isinstance(instrument_id, bool) or not isinstance(instrument_id, int):
            try:
                instrument_id = int(instrument_id)
            except (TypeError, ValueError):
                raise InvalidPoint(f"instrument_id must be an integer, got {instrument_id!r}", field="instrument_id")
        points = batch.get("points") or []
        if not isinstance(points, list):
            raise InvalidPoint("points must be a list", field="points")
        return cls(instrument_id=instrument_id, points=points)


@dataclass
class RejectedPoint:
    """A point that was not stored, and why."""
    index: int
    point: Any
    reason: str
    message: str

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "point": self.point,
            "reason": self.reason,
            "message": self.message,
        }


@dataclass
class IngestResult:
    instrument_id: int
    accepted: int = 0
    rejected: list[RejectedPoint] = field(default_factory=list)
    dry_run: bool = False

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)

    def to_dict(self) -> dict:
        return {
            "instrument_id": self.instrument_id,
            "accepted": self.accepted,
            "rejected": [r.to_dict() for r in self.rejected],
            "dry_run": self.dry_run,
        }


def _unpack(raw: Any) -> tuple:
    """Pull (variable, timestamp_ms, value) out of a dict, tuple or Measurement."""
    if isinstance(raw, Measurement):
        return raw.variable, raw.timestamp_ms, raw.value
    if isinstance(raw, Mapping):
        variable = raw.get("variable", raw.get("var"))
        timestamp = raw.get("timestamp_ms")
        if timestamp is None and raw.get("at") is not None:
            timestamp = raw["at"]
        if isinstance(timestamp, str):
            try:
                timestamp = to_epoch_ms(timestamp)
            except ValueError as e:
                raise InvalidPoint(f"unparseable timestamp {timestamp!r}", field="timestamp_ms") from e
        return variable, timestamp, raw.get("value")
    if isinstance(raw, (list, tuple)) and len(raw) == 3:
        return tuple(raw)
    raise InvalidPoint(f"point must be an object with variable/timestamp_ms/value, got {raw!r}")


class IngestWriter:
    """Validates measurement batches and appends them to the point store."""

    def __init__(self, store: PointStore):
        self.store = store

    def ingest(
        self,
        batch: Union[IngestBatch, Mapping[str, Any]],
        dry_run: bool = False,
    ) -> IngestResult:
        """
        Validate and store a batch.

        Args:
            batch: IngestBatch or {instrument_id, points: [...]}
            dry_run: Validate only; write nothing

        Returns:
            IngestResult with accepted count and itemized rejections

        Raises:
            NoSuchInstrument: unknown instrument id
            StoreUnavailable: store failure; no point from the batch was written
        """
        batch = IngestBatch.coerce(batch)
        instrument = self.store.get_instrument(batch.instrument_id)
        known = set(instrument.shortnames)

        result = IngestResult(instrument_id=instrument.id, dry_run=dry_run)
        valid: list[Measurement] = []

        for index, raw in enumerate(batch.points):
            try:
                variable, timestamp, value = _unpack(raw)
                if isinstance(variable, str) and variable and variable not in known:
                    raise UnknownVariable(instrument.id, variable)
                valid.append(validate_point(instrument.id, variable, timestamp, value))
            except (InvalidPoint, UnknownVariable) as e:
                result.rejected.append(RejectedPoint(index=index, point=raw, reason=e.code, message=str(e)))

        if valid and not dry_run:
            with instrument_lock(instrument.id):
                try:
                    self.store.append_many(valid)
                except StoreUnavailable:
                    logger.error(f"Ingest for instrument {instrument.id} failed; {len(valid)} points not written")
                    raise

        result.accepted = len(valid)

        if result.rejected:
            reasons = sorted({r.reason for r in result.rejected})
            logger.warning(
                f"Instrument {instrument.id}: accepted {result.accepted}, "
                f"rejected {result.rejected_count} ({', '.join(reasons)})"
            )
        else:
            logger.debug(f"Instrument {instrument.id}: accepted {result.accepted}")

        return result

    def ingest_query_params(
        self,
        params: Mapping[str, str],
        url: Optional[str] = None,
    ) -> IngestResult:
        """
        Ingest one URL-style measurement set.

        Every non-reserved parameter is a variable shortname. ``at`` gives the
        time (ISO-8601 or epoch ms, default now); ``test`` validates without
        writing. A successful write records ``url``, minus credentials, as the
        instrument's last_url.
        """
        if "instrument_id" not in params:
            raise InvalidPoint("instrument_id is required", field="instrument_id")
        try:
            instrument_id = int(params["instrument_id"])
        except (TypeError, ValueError) as e:
            raise InvalidPoint(f"instrument_id must be an integer, got {params['instrument_id']!r}", field="instrument_id") from e

        if params.get("at"):
            try:
                timestamp = to_epoch_ms(params["at"])
            except ValueError as e:
                raise InvalidPoint(f"unparseable time {params['at']!r}", field="at") from e
        else:
            timestamp = now_ms()

        dry_run = "test" in params

        points = []
        for key, raw in params.items():
            if key in RESERVED_PARAMS:
                continue
            try:
                value: Any = float(raw)
            except (TypeError, ValueError):
                value = raw
            points.append({"variable": key, "timestamp_ms": timestamp, "value": value})

        result = self.ingest(IngestBatch(instrument_id=instrument_id, points=points), dry_run=dry_run)

        if url and result.accepted and not dry_run:
            self.store.set_last_url(instrument_id, sanitize_url(url))

        return result
