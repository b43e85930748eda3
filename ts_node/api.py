"""HTTP interface for the sensor node.

Routes:
- GET  /health                          - Store and retention status
- GET  /instruments                     - Instrument catalog
- GET  /instruments/{id}                - One instrument with its variables
- POST /instruments/{id}/points         - Ingest a batch of points
- GET  /instruments/{id}/points         - Window / tail / last queries
- GET  /instruments/{id}/live           - Live poll (watermark in ``after``)
- GET  /measurements/url_create         - URL-style ingest
- POST /retention/prune                 - Prune now

Handlers are plain ``def`` functions; FastAPI runs them on its threadpool and
each worker thread gets its own store connection.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from .config import NodeConfig, load_config
from .db import Measurement, PointStore
from .durations import EPOCH_MS_MAX
from .errors import (
    DeadlineExceeded,
    InvalidPoint,
    NoSuchInstrument,
    NoSuchVariable,
    StoreUnavailable,
    TSNodeError,
    UnknownVariable,
)
from .ingest import IngestWriter
from .live import LiveFeed
from .query import QueryEngine
from .retention import RetentionManager, RetentionPolicy

router = APIRouter()

# Error class -> HTTP status
STATUS_BY_ERROR = {
    InvalidPoint: 422,
    UnknownVariable: 404,
    NoSuchVariable: 404,
    NoSuchInstrument: 404,
    StoreUnavailable: 503,
    DeadlineExceeded: 504,
}


# ============================================================================
# Models
# ============================================================================


class IngestRequest(BaseModel):
    """Batch body. Points stay loosely typed so one bad point cannot sink the batch."""

    points: list[dict[str, Any]] = Field(default_factory=list)


class RejectedOut(BaseModel):
    index: int
    point: Any
    reason: str
    message: str


class IngestResponse(BaseModel):
    instrument_id: int
    accepted: int
    rejected: list[RejectedOut]
    dry_run: bool = False


# ============================================================================
# Dependencies
# ============================================================================


def get_store(request: Request) -> PointStore:
    return request.app.state.store


def get_writer(request: Request) -> IngestWriter:
    return request.app.state.writer


def get_engine(request: Request) -> QueryEngine:
    return request.app.state.engine


def get_feed(request: Request) -> LiveFeed:
    return request.app.state.feed


def get_retention(request: Request) -> RetentionManager:
    return request.app.state.retention


def _points_out(points: list[Measurement]) -> list[dict]:
    return [{"timestamp_ms": p.timestamp_ms, "value": p.value} for p in points]


# ============================================================================
# Routes
# ============================================================================


@router.get("/health")
def health(request: Request, store: PointStore = Depends(get_store)):
    loop = getattr(request.app.state, "retention_loop", None)
    return {
        "status": "ok",
        "store": store.get_stats(),
        "retention": loop.get_status() if loop else {"retention": str(request.app.state.retention.policy)},
    }


@router.get("/instruments")
def list_instruments(store: PointStore = Depends(get_store)):
    return [asdict(inst) for inst in store.list_instruments()]


@router.get("/instruments/{instrument_id}")
def get_instrument(instrument_id: int, store: PointStore = Depends(get_store)):
    inst = store.get_instrument(instrument_id)
    out = asdict(inst)
    out["refresh_rate_ms"] = inst.refresh_rate_ms
    out["point_count"] = store.count_points(instrument_id)
    return out


@router.post("/instruments/{instrument_id}/points", response_model=IngestResponse)
def ingest_points(
    instrument_id: int,
    body: IngestRequest,
    test: bool = False,
    writer: IngestWriter = Depends(get_writer),
):
    """Ingest a batch; rejected points are itemized, the rest are stored together."""
    result = writer.ingest({"instrument_id": instrument_id, "points": body.points}, dry_run=test)
    return result.to_dict()


@router.get("/measurements/url_create", response_model=IngestResponse)
def url_create(request: Request, writer: IngestWriter = Depends(get_writer)):
    """URL ingest: every non-reserved query parameter is a variable shortname."""
    params = dict(request.query_params)
    result = writer.ingest_query_params(params, url=str(request.url))
    return result.to_dict()


@router.get("/instruments/{instrument_id}/points")
def query_points(
    instrument_id: int,
    var: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    after: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=0, le=EPOCH_MS_MAX),
    last: bool = False,
    engine: QueryEngine = Depends(get_engine),
):
    """Window, tail (``after``) or last query; a list for ``var``, else a map by shortname."""
    result = engine.query(
        instrument_id,
        variable=var,
        start=start,
        end=end,
        after=after,
        limit=limit,
        last=last,
    )
    if var is not None:
        return {"instrument_id": instrument_id, "variable": var, "points": _points_out(result)}
    return {
        "instrument_id": instrument_id,
        "variables": {name: _points_out(points) for name, points in result.items()},
    }


@router.get("/instruments/{instrument_id}/live")
def live(
    instrument_id: int,
    var: Optional[str] = None,
    after: Optional[int] = None,
    feed: LiveFeed = Depends(get_feed),
):
    """Live poll. ``after`` is the last timestamp (ms) the client has seen."""
    return feed.poll(instrument_id, variable=var, after_ms=after).to_dict()


@router.post("/retention/prune")
def prune_now(retention: RetentionManager = Depends(get_retention)):
    return retention.prune().to_dict()


# ============================================================================
# Application
# ============================================================================


def _error_response(status: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={
            "error": getattr(exc, "code", type(exc).__name__),
            "detail": str(exc),
            "retryable": bool(getattr(exc, "retryable", False)),
        },
    )


def create_app(
    config: Optional[NodeConfig] = None,
    store: Optional[PointStore] = None,
) -> FastAPI:
    """
    Build the FastAPI app around one store.

    Args:
        config: Node configuration (default: load_config())
        store: Existing store (default: one built from config)
    """
    config = config or load_config()
    if store is None:
        store = PointStore.from_config(config)
        store.init_db()

    app = FastAPI(title="Sensor time-series node")
    app.state.config = config
    app.state.store = store
    app.state.writer = IngestWriter(store)
    app.state.engine = QueryEngine(
        store,
        default_timeout_seconds=config.query_timeout_seconds,
        default_window=config.default_window,
    )
    app.state.feed = LiveFeed(store, default_timeout_seconds=config.query_timeout_seconds)
    app.state.retention = RetentionManager(
        store,
        RetentionPolicy.parse(config.retention),
        batch_size=config.prune_batch_size,
    )
    app.state.retention_loop = None

    @app.exception_handler(TSNodeError)
    async def node_error_handler(request: Request, exc: TSNodeError):
        status = STATUS_BY_ERROR.get(type(exc), 500)
        if status >= 500:
            logger.warning(f"{request.method} {request.url.path} -> {status}: {exc}")
        return _error_response(status, exc)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error_response(422, exc)

    app.include_router(router)
    return app
