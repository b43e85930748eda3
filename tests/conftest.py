from __future__ import annotations

import sys
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

import pytest

from ts_node.db import PointStore, reset_store

_TS_ENV = ("TS_DB_PATH", "TS_RETENTION", "TS_PRUNE_INTERVAL", "TS_BUSY_TIMEOUT_MS", "TS_QUERY_TIMEOUT_S")


@pytest.fixture()
def temp_data_root(tmp_path, monkeypatch):
    """
    Isolated DATA_ROOT for tests (keeps sqlite/config files away from the repo).
    """
    data_root = tmp_path / "data_root"
    data_root.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("DATA_ROOT", str(data_root))
    for name in _TS_ENV:
        monkeypatch.delenv(name, raising=False)
    yield data_root
    reset_store()


@pytest.fixture()
def store(temp_data_root):
    """
    Fresh PointStore backed by a throwaway sqlite file.
    """
    s = PointStore(temp_data_root / "data" / "points.sqlite", busy_timeout_ms=2000)
    s.init_db()
    yield s
    s.close()


@pytest.fixture()
def weather_station(store):
    """
    Instrument with temp/rh/pres variables and a small display cap.
    """
    return store.create_instrument(
        name="Weather Station",
        site="Mesa Lab",
        display_points=5,
        sample_rate_seconds=2,
        plot_offset_value=1,
        plot_offset_units="hours",
        variables=["temp", "rh", "pres"],
    )
