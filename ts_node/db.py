"""
SQLite point store for the sensor node.

Manages:
- instruments / variables: the catalog ingest validates against
- points: (instrument, variable, timestamp_ms, value), unique per key,
  last write wins

WAL mode gives every read statement a consistent snapshot, so range reads
never block ingest or retention and never observe a half-written point.
Lock waits are bounded by busy_timeout and surface as StoreUnavailable;
query deadlines interrupt the statement and surface as DeadlineExceeded.
"""

from __future__ import annotations

import math
import numbers
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Iterable, Optional, Union

from loguru import logger

from utils.concurrency import Deadline, forget_instrument_lock, instrument_lock
from .config import NodeConfig, default_db_path
from .durations import EPOCH_MS_MAX, EPOCH_MS_MIN, normalize_unit
from .errors import (
    DeadlineExceeded,
    InvalidPoint,
    NoSuchInstrument,
    StoreUnavailable,
)


# VM instructions between deadline checks
PROGRESS_STEPS = 1000

DEFAULT_DISPLAY_POINTS = 120
DEFAULT_SAMPLE_RATE_SECONDS = 60.0
DEFAULT_PLOT_OFFSET_VALUE = 1
DEFAULT_PLOT_OFFSET_UNITS = "weeks"

# Instrument columns that update_instrument() may touch
_MUTABLE_INSTRUMENT_FIELDS = (
    "name",
    "site",
    "display_points",
    "sample_rate_seconds",
    "plot_offset_value",
    "plot_offset_units",
    "last_url",
)


@dataclass(frozen=True)
class Measurement:
    """A single stored point."""
    instrument_id: int
    variable: str
    timestamp_ms: int
    value: float

    def to_dict(self) -> dict:
        return {
            "instrument_id": self.instrument_id,
            "variable": self.variable,
            "timestamp_ms": self.timestamp_ms,
            "value": self.value,
        }


@dataclass
class Variable:
    """A named measured quantity belonging to an instrument."""
    instrument_id: int
    shortname: str
    name: Optional[str] = None
    units: Optional[str] = None
    maximum_plot_points: Optional[int] = None
    id: Optional[int] = None


@dataclass
class Instrument:
    """A sensor device and its variables."""
    id: int
    name: str
    site: Optional[str] = None
    display_points: int = DEFAULT_DISPLAY_POINTS
    sample_rate_seconds: float = DEFAULT_SAMPLE_RATE_SECONDS
    plot_offset_value: int = DEFAULT_PLOT_OFFSET_VALUE
    plot_offset_units: str = DEFAULT_PLOT_OFFSET_UNITS
    last_url: Optional[str] = None
    variables: list[Variable] = field(default_factory=list)

    @property
    def refresh_rate_ms(self) -> int:
        """Suggested client poll interval: one sample period, at least 1s."""
        return max(1000, int(self.sample_rate_seconds * 1000))

    @property
    def shortnames(self) -> list[str]:
        return [v.shortname for v in self.variables]

    def find_variable(self, shortname: str) -> Optional[Variable]:
        for var in self.variables:
            if var.shortname == shortname:
                return var
        return None

    def display_points_for(self, shortname: str) -> int:
        """Per-variable cap if set, else the instrument's display_points."""
        var = self.find_variable(shortname)
        if var is not None and var.maximum_plot_points:
            return var.maximum_plot_points
        return self.display_points


def validate_point(instrument_id, variable, timestamp_ms, value) -> Measurement:
    """
    Check one point and normalize its types.

    Raises:
        InvalidPoint: missing, non-numeric or non-finite timestamp/value
    """
    if isinstance(instrument_id, bool) or not isinstance(instrument_id, int):
        raise InvalidPoint(f"instrument_id must be an integer, got {instrument_id!r}", field="instrument_id")
    if not isinstance(variable, str) or not variable:
        raise InvalidPoint(f"variable must be a non-empty string, got {variable!r}", field="variable")

    if timestamp_ms is None:
        raise InvalidPoint("timestamp is missing", field="timestamp_ms")
    if isinstance(timestamp_ms, bool) or not isinstance(timestamp_ms, numbers.Real):
        raise InvalidPoint(f"timestamp must be numeric, got {timestamp_ms!r}", field="timestamp_ms")
    if not math.isfinite(timestamp_ms):
        raise InvalidPoint(f"timestamp is not finite: {timestamp_ms!r}", field="timestamp_ms")
    if timestamp_ms != int(timestamp_ms):
        raise InvalidPoint(f"timestamp must be whole milliseconds, got {timestamp_ms!r}", field="timestamp_ms")
    ts = int(timestamp_ms)
    if ts > EPOCH_MS_MAX or ts < EPOCH_MS_MIN:
        raise InvalidPoint(f"timestamp out of range: {timestamp_ms!r}", field="timestamp_ms")

    if value is None:
        raise InvalidPoint("value is missing", field="value")
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise InvalidPoint(f"value must be numeric, got {value!r}", field="value")
    val = float(value)
    if not math.isfinite(val):
        raise InvalidPoint(f"value is not finite: {value!r}", field="value")

    return Measurement(instrument_id=instrument_id, variable=variable, timestamp_ms=ts, value=val)


_UPSERT_POINT = """
    INSERT INTO points (instrument_id, variable, timestamp_ms, value)
    VALUES (?, ?, ?, ?)
    ON CONFLICT(instrument_id, variable, timestamp_ms)
    DO UPDATE SET value = excluded.value
"""


class PointStore:
    """
    Thread-safe SQLite point store.

    Each thread gets its own connection. Writes run in BEGIN IMMEDIATE
    transactions committed with synchronous=FULL by default, so a point is
    on disk before append() returns.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        busy_timeout_ms: int = 5000,
        synchronous: str = "FULL",
    ):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite file. Defaults to $DATA_ROOT/data/points.sqlite
            busy_timeout_ms: Max wait on a locked database before StoreUnavailable
            synchronous: SQLite synchronous mode (FULL for durable commits)
        """
        self.db_path = Path(db_path) if db_path is not None else default_db_path()
        self.busy_timeout_ms = int(busy_timeout_ms)
        self.synchronous = synchronous.upper()
        self._local = threading.local()
        self._connections: list[tuple[threading.Thread, sqlite3.Connection]] = []
        self._conn_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: NodeConfig) -> "PointStore":
        return cls(
            db_path=config.db_path,
            busy_timeout_ms=config.busy_timeout_ms,
            synchronous=config.synchronous,
        )

    # -------------------------------------------------------------------------
    # Connections and transactions
    # -------------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local connection with proper settings."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
            conn.execute(f"PRAGMA synchronous={self.synchronous}")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
            with self._conn_lock:
                self._close_dead_connections()
                self._connections.append((threading.current_thread(), conn))
        return conn

    def _close_dead_connections(self) -> None:
        """Close connections owned by threads that have exited. Caller holds _conn_lock."""
        live = []
        for thread, conn in self._connections:
            if thread.is_alive():
                live.append((thread, conn))
            else:
                conn.close()
        if len(live) < len(self._connections):
            logger.debug(f"Closed {len(self._connections) - len(live)} connections from exited threads")
        self._connections = live

    @property
    def open_connections(self) -> int:
        with self._conn_lock:
            return len(self._connections)

    @contextmanager
    def _store_errors(self, op: str) -> Generator[None, None, None]:
        """Translate SQLite operational errors into the node's taxonomy."""
        try:
            yield
        except sqlite3.OperationalError as e:
            if "interrupted" in str(e).lower():
                raise DeadlineExceeded(f"{op} exceeded its deadline") from e
            logger.warning(f"Store error during {op}: {e}")
            raise StoreUnavailable(f"{op} failed: {e}") from e

    @contextmanager
    def _deadline(self, conn: sqlite3.Connection, deadline) -> Generator[None, None, None]:
        """Interrupt statements on ``conn`` once ``deadline`` passes."""
        deadline = Deadline.coerce(deadline)
        if deadline is None:
            yield
            return
        if deadline.expired():
            raise DeadlineExceeded("Deadline expired before the query started")
        conn.set_progress_handler(lambda: 1 if deadline.expired() else 0, PROGRESS_STEPS)
        try:
            yield
        finally:
            conn.set_progress_handler(None, PROGRESS_STEPS)

    @contextmanager
    def _reader(self, op: str, deadline=None) -> Generator[sqlite3.Connection, None, None]:
        with self._store_errors(op):
            conn = self._get_connection()
            with self._deadline(conn, deadline):
                yield conn

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Write transaction. Takes the write lock up front (BEGIN IMMEDIATE)."""
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    @contextmanager
    def snapshot(self, deadline=None) -> Generator[sqlite3.Connection, None, None]:
        """
        Read transaction: every query issued from this thread inside the block
        sees the same committed state.
        """
        with self._store_errors("snapshot"):
            conn = self._get_connection()
            conn.execute("BEGIN")
            try:
                with self._deadline(conn, deadline):
                    yield conn
            finally:
                if conn.in_transaction:
                    conn.execute("COMMIT")

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        with self._store_errors("init_db"), self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS instruments (
                    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
                    name                TEXT NOT NULL,
                    site                TEXT,
                    display_points      INTEGER NOT NULL CHECK (display_points > 0),
                    sample_rate_seconds REAL NOT NULL CHECK (sample_rate_seconds > 0),
                    plot_offset_value   INTEGER NOT NULL,
                    plot_offset_units   TEXT NOT NULL,
                    last_url            TEXT,
                    created_at          TIMESTAMP NOT NULL,
                    updated_at          TIMESTAMP NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS variables (
                    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
                    instrument_id       INTEGER NOT NULL REFERENCES instruments(id) ON DELETE CASCADE,
                    shortname           TEXT NOT NULL,
                    name                TEXT,
                    units               TEXT,
                    maximum_plot_points INTEGER,
                    UNIQUE(instrument_id, shortname)
                )
            """)

            # seq preserves insertion order for equal timestamps across variables
            conn.execute("""
                CREATE TABLE IF NOT EXISTS points (
                    seq           INTEGER PRIMARY KEY AUTOINCREMENT,
                    instrument_id INTEGER NOT NULL,
                    variable      TEXT NOT NULL,
                    timestamp_ms  INTEGER NOT NULL,
                    value         REAL NOT NULL,
                    UNIQUE(instrument_id, variable, timestamp_ms)
                )
            """)

            # Instrument-wide scans and last_timestamp()
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_points_instrument_ts
                ON points(instrument_id, timestamp_ms, seq)
            """)

            # Retention cutoff scans
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_points_ts
                ON points(timestamp_ms)
            """)

        logger.info(f"Initialized point store at {self.db_path}")

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    def create_instrument(
        self,
        name: str,
        site: Optional[str] = None,
        display_points: int = DEFAULT_DISPLAY_POINTS,
        sample_rate_seconds: float = DEFAULT_SAMPLE_RATE_SECONDS,
        plot_offset_value: int = DEFAULT_PLOT_OFFSET_VALUE,
        plot_offset_units: str = DEFAULT_PLOT_OFFSET_UNITS,
        variables: Iterable[Union[str, Variable, dict]] = (),
    ) -> Instrument:
        """
        Register an instrument and (optionally) its variables.

        Args:
            name: Display name
            site: Site name (free text)
            display_points: Max points a live poll returns
            sample_rate_seconds: Expected sampling period; drives refresh hints
            plot_offset_value: How far back the first live poll reaches...
            plot_offset_units: ...in these units (seconds..years)
            variables: Shortnames, Variable objects or dicts

        Returns:
            The stored Instrument with its variables
        """
        if display_points <= 0:
            raise ValueError(f"display_points must be positive, got {display_points}")
        units = normalize_unit(plot_offset_units)
        now = datetime.now(timezone.utc).isoformat()

        with self._store_errors("create_instrument"), self.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO instruments
                (name, site, display_points, sample_rate_seconds, plot_offset_value,
                 plot_offset_units, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (name, site, display_points, sample_rate_seconds, plot_offset_value, units, now, now))
            instrument_id = cursor.lastrowid

            for entry in variables:
                var = self._coerce_variable(instrument_id, entry)
                self._insert_variable(conn, var)

        logger.debug(f"Created instrument {instrument_id} ({name})")
        return self.get_instrument(instrument_id)

    @staticmethod
    def _coerce_variable(instrument_id: int, entry: Union[str, Variable, dict]) -> Variable:
        if isinstance(entry, Variable):
            return Variable(
                instrument_id=instrument_id,
                shortname=entry.shortname,
                name=entry.name,
                units=entry.units,
                maximum_plot_points=entry.maximum_plot_points,
            )
        if isinstance(entry, dict):
            return Variable(instrument_id=instrument_id, **entry)
        return Variable(instrument_id=instrument_id, shortname=str(entry))

    @staticmethod
    def _insert_variable(conn: sqlite3.Connection, var: Variable) -> int:
        if not var.shortname:
            raise ValueError("Variable shortname must be non-empty")
        try:
            cursor = conn.execute("""
                INSERT INTO variables (instrument_id, shortname, name, units, maximum_plot_points)
                VALUES (?, ?, ?, ?, ?)
            """, (var.instrument_id, var.shortname, var.name or var.shortname, var.units, var.maximum_plot_points))
        except sqlite3.IntegrityError as e:
            raise ValueError(
                f"Variable '{var.shortname}' already exists on instrument {var.instrument_id}"
            ) from e
        return cursor.lastrowid

    def add_variable(
        self,
        instrument_id: int,
        shortname: str,
        name: Optional[str] = None,
        units: Optional[str] = None,
        maximum_plot_points: Optional[int] = None,
    ) -> Variable:
        """Add a variable to an existing instrument."""
        var = Variable(
            instrument_id=instrument_id,
            shortname=shortname,
            name=name,
            units=units,
            maximum_plot_points=maximum_plot_points,
        )
        with self._store_errors("add_variable"), self.transaction() as conn:
            if not self._instrument_exists(conn, instrument_id):
                raise NoSuchInstrument(instrument_id)
            var.id = self._insert_variable(conn, var)
            var.name = var.name or shortname
        return var

    @staticmethod
    def _instrument_exists(conn: sqlite3.Connection, instrument_id: int) -> bool:
        row = conn.execute("SELECT 1 FROM instruments WHERE id = ?", (instrument_id,)).fetchone()
        return row is not None

    def get_instrument(self, instrument_id: int) -> Instrument:
        """
        Fetch an instrument with its variables.

        Raises:
            NoSuchInstrument: unknown id
        """
        with self._reader("get_instrument") as conn:
            row = conn.execute("SELECT * FROM instruments WHERE id = ?", (instrument_id,)).fetchone()
            if row is None:
                raise NoSuchInstrument(instrument_id)
            var_rows = conn.execute(
                "SELECT * FROM variables WHERE instrument_id = ? ORDER BY id",
                (instrument_id,),
            ).fetchall()
        return self._row_to_instrument(row, var_rows)

    def list_instruments(self) -> list[Instrument]:
        with self._reader("list_instruments") as conn:
            rows = conn.execute("SELECT * FROM instruments ORDER BY id").fetchall()
            var_rows = conn.execute("SELECT * FROM variables ORDER BY id").fetchall()

        by_instrument: dict[int, list[sqlite3.Row]] = {}
        for vr in var_rows:
            by_instrument.setdefault(vr["instrument_id"], []).append(vr)
        return [self._row_to_instrument(row, by_instrument.get(row["id"], [])) for row in rows]

    def update_instrument(self, instrument_id: int, **changes) -> Instrument:
        """Update instrument settings (display_points, plot offset, ...)."""
        unknown = set(changes) - set(_MUTABLE_INSTRUMENT_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update instrument fields: {sorted(unknown)}")
        if "display_points" in changes and int(changes["display_points"]) <= 0:
            raise ValueError(f"display_points must be positive, got {changes['display_points']}")
        if "plot_offset_units" in changes:
            changes["plot_offset_units"] = normalize_unit(changes["plot_offset_units"])
        if not changes:
            return self.get_instrument(instrument_id)

        assignments = ", ".join(f"{key} = ?" for key in changes)
        params = [*changes.values(), datetime.now(timezone.utc).isoformat(), instrument_id]

        with self._store_errors("update_instrument"), self.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE instruments SET {assignments}, updated_at = ? WHERE id = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise NoSuchInstrument(instrument_id)
        return self.get_instrument(instrument_id)

    def set_last_url(self, instrument_id: int, url: str) -> None:
        self.update_instrument(instrument_id, last_url=url)

    def delete_instrument(self, instrument_id: int) -> int:
        """
        Delete an instrument, its variables and all of its points.

        Returns:
            Number of points deleted
        """
        with instrument_lock(instrument_id):
            with self._store_errors("delete_instrument"), self.transaction() as conn:
                if not self._instrument_exists(conn, instrument_id):
                    raise NoSuchInstrument(instrument_id)
                deleted = conn.execute("DELETE FROM points WHERE instrument_id = ?", (instrument_id,)).rowcount
                conn.execute("DELETE FROM instruments WHERE id = ?", (instrument_id,))
        forget_instrument_lock(instrument_id)

        logger.info(f"Deleted instrument {instrument_id} ({deleted} points)")
        return deleted

    def duplicate_instrument(self, instrument_id: int, copies: int = 1) -> list[Instrument]:
        """
        Clone an instrument's settings and variables (not its points).

        Clones get " clone" appended to the name once, and no last_url.
        """
        source = self.get_instrument(instrument_id)
        name = source.name if "clone" in source.name else f"{source.name} clone"

        clones = []
        for _ in range(max(0, int(copies))):
            clones.append(self.create_instrument(
                name=name,
                site=source.site,
                display_points=source.display_points,
                sample_rate_seconds=source.sample_rate_seconds,
                plot_offset_value=source.plot_offset_value,
                plot_offset_units=source.plot_offset_units,
                variables=source.variables,
            ))
        logger.info(f"Duplicated instrument {instrument_id} x{len(clones)}")
        return clones

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def append(self, point: Measurement) -> Measurement:
        """
        Durably store one point (overwrites an existing point with the same key).

        Raises:
            InvalidPoint: missing or non-finite timestamp/value
            StoreUnavailable: database locked past busy_timeout, or I/O failure
        """
        point = validate_point(point.instrument_id, point.variable, point.timestamp_ms, point.value)
        with self._store_errors("append"), self.transaction() as conn:
            conn.execute(_UPSERT_POINT, (point.instrument_id, point.variable, point.timestamp_ms, point.value))
        return point

    def append_many(self, points: Iterable[Measurement]) -> int:
        """
        Store a batch in a single transaction: all points land or none do.

        Every point is validated before anything is written.

        Returns:
            Number of points written
        """
        checked = [
            validate_point(p.instrument_id, p.variable, p.timestamp_ms, p.value)
            for p in points
        ]
        if not checked:
            return 0
        with self._store_errors("append_many"), self.transaction() as conn:
            conn.executemany(
                _UPSERT_POINT,
                [(p.instrument_id, p.variable, p.timestamp_ms, p.value) for p in checked],
            )
        return len(checked)

    def delete_points(self, instrument_id: int) -> int:
        """Delete every point of an instrument, keeping the instrument."""
        with instrument_lock(instrument_id), self._store_errors("delete_points"), self.transaction() as conn:
            deleted = conn.execute("DELETE FROM points WHERE instrument_id = ?", (instrument_id,)).rowcount
        logger.info(f"Deleted {deleted} points for instrument {instrument_id}")
        return deleted

    def prune_before(self, cutoff_ms: int, batch_size: int = 5000) -> int:
        """
        Delete points with timestamp_ms < cutoff_ms.

        Deletes in batches, each its own short write transaction, so ingest
        waits at most one batch for the write lock.

        Returns:
            Total number of points deleted
        """
        batch_size = max(1, int(batch_size))
        total = 0
        while True:
            with self._store_errors("prune_before"), self.transaction() as conn:
                deleted = conn.execute("""
                    DELETE FROM points
                    WHERE seq IN (
                        SELECT seq FROM points
                        WHERE timestamp_ms < ?
                        LIMIT ?
                    )
                """, (cutoff_ms, batch_size)).rowcount
            total += deleted
            if deleted < batch_size:
                break
        return total

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def range_query(
        self,
        instrument_id: int,
        variable: str,
        start_ms: int,
        end_ms: int,
        deadline=None,
    ) -> list[Measurement]:
        """
        Points in [start_ms, end_ms], ascending by timestamp.

        An inverted or empty range returns [].
        """
        if start_ms > end_ms:
            return []
        with self._reader("range_query", deadline) as conn:
            rows = conn.execute("""
                SELECT instrument_id, variable, timestamp_ms, value
                FROM points
                WHERE instrument_id = ? AND variable = ?
                  AND timestamp_ms >= ? AND timestamp_ms <= ?
                ORDER BY timestamp_ms ASC
            """, (instrument_id, variable, start_ms, end_ms)).fetchall()
        return [self._row_to_measurement(row) for row in rows]

    def tail_query(
        self,
        instrument_id: int,
        variable: str,
        after_ms: Optional[int],
        limit: int,
        deadline=None,
    ) -> list[Measurement]:
        """
        Up to ``limit`` points strictly after ``after_ms``, ascending.

        Returns the earliest points past the watermark so a client that
        advances its watermark to the last point received never skips data.
        """
        if limit <= 0:
            return []
        after = EPOCH_MS_MIN if after_ms is None else int(after_ms)
        with self._reader("tail_query", deadline) as conn:
            rows = conn.execute("""
                SELECT instrument_id, variable, timestamp_ms, value
                FROM points
                WHERE instrument_id = ? AND variable = ? AND timestamp_ms > ?
                ORDER BY timestamp_ms ASC
                LIMIT ?
            """, (instrument_id, variable, after, int(limit))).fetchall()
        return [self._row_to_measurement(row) for row in rows]

    def latest(
        self,
        instrument_id: int,
        variable: str,
        limit: int,
        since_ms: Optional[int] = None,
        deadline=None,
    ) -> list[Measurement]:
        """The most recent ``limit`` points (at or after ``since_ms``), ascending."""
        if limit <= 0:
            return []
        since = EPOCH_MS_MIN if since_ms is None else int(since_ms)
        with self._reader("latest", deadline) as conn:
            rows = conn.execute("""
                SELECT instrument_id, variable, timestamp_ms, value
                FROM points
                WHERE instrument_id = ? AND variable = ? AND timestamp_ms >= ?
                ORDER BY timestamp_ms DESC
                LIMIT ?
            """, (instrument_id, variable, since, int(limit))).fetchall()
        return [self._row_to_measurement(row) for row in reversed(rows)]

    def last_point(self, instrument_id: int, variable: str, deadline=None) -> Optional[Measurement]:
        points = self.latest(instrument_id, variable, 1, deadline=deadline)
        return points[0] if points else None

    def last_timestamp(self, instrument_id: int) -> Optional[int]:
        """Most recent timestamp across all variables of an instrument."""
        with self._reader("last_timestamp") as conn:
            row = conn.execute(
                "SELECT MAX(timestamp_ms) AS ts FROM points WHERE instrument_id = ?",
                (instrument_id,),
            ).fetchone()
        return row["ts"] if row else None

    def instrument_range_query(
        self,
        instrument_id: int,
        start_ms: int,
        end_ms: int,
        deadline=None,
    ) -> list[Measurement]:
        """
        All variables of an instrument in [start_ms, end_ms].

        Ordered by timestamp, then insertion order for equal timestamps.
        """
        if start_ms > end_ms:
            return []
        with self._reader("instrument_range_query", deadline) as conn:
            rows = conn.execute("""
                SELECT instrument_id, variable, timestamp_ms, value
                FROM points
                WHERE instrument_id = ? AND timestamp_ms >= ? AND timestamp_ms <= ?
                ORDER BY timestamp_ms ASC, seq ASC
            """, (instrument_id, start_ms, end_ms)).fetchall()
        return [self._row_to_measurement(row) for row in rows]

    def count_points(self, instrument_id: Optional[int] = None) -> int:
        with self._reader("count_points") as conn:
            if instrument_id is None:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM points").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM points WHERE instrument_id = ?",
                    (instrument_id,),
                ).fetchone()
        return row["cnt"] if row else 0

    def get_stats(self) -> dict:
        """Summary counts for status displays."""
        with self._reader("get_stats") as conn:
            counts = conn.execute("""
                SELECT
                    (SELECT COUNT(*) FROM instruments) AS instruments,
                    (SELECT COUNT(*) FROM variables)   AS variables,
                    (SELECT COUNT(*) FROM points)      AS points,
                    (SELECT MIN(timestamp_ms) FROM points) AS oldest_ms,
                    (SELECT MAX(timestamp_ms) FROM points) AS newest_ms
            """).fetchone()
        return {
            "instruments": counts["instruments"],
            "variables": counts["variables"],
            "points": counts["points"],
            "oldest_ms": counts["oldest_ms"],
            "newest_ms": counts["newest_ms"],
            "db_path": str(self.db_path),
        }

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_measurement(row: sqlite3.Row) -> Measurement:
        return Measurement(
            instrument_id=row["instrument_id"],
            variable=row["variable"],
            timestamp_ms=row["timestamp_ms"],
            value=row["value"],
        )

    @staticmethod
    def _row_to_instrument(row: sqlite3.Row, var_rows: list[sqlite3.Row]) -> Instrument:
        return Instrument(
            id=row["id"],
            name=row["name"],
            site=row["site"],
            display_points=row["display_points"],
            sample_rate_seconds=row["sample_rate_seconds"],
            plot_offset_value=row["plot_offset_value"],
            plot_offset_units=row["plot_offset_units"],
            last_url=row["last_url"],
            variables=[
                Variable(
                    id=vr["id"],
                    instrument_id=vr["instrument_id"],
                    shortname=vr["shortname"],
                    name=vr["name"],
                    units=vr["units"],
                    maximum_plot_points=vr["maximum_plot_points"],
                )
                for vr in var_rows
            ],
        )

    def close(self) -> None:
        """Close every connection this store opened."""
        with self._conn_lock:
            for _, conn in self._connections:
                try:
                    conn.close()
                except sqlite3.ProgrammingError:
                    pass
            self._connections.clear()
        self._local = threading.local()


# Module-level singleton for convenience
_default_store: Optional[PointStore] = None


def get_store(config: Optional[NodeConfig] = None) -> PointStore:
    """
    Get the default PointStore instance.

    Creates and initializes the database if needed.
    """
    global _default_store

    if _default_store is None:
        _default_store = PointStore.from_config(config) if config else PointStore()
        _default_store.init_db()

    return _default_store


def reset_store() -> None:
    """Reset the default store instance (for testing)."""
    global _default_store
    if _default_store:
        _default_store.close()
        _default_store = None
