"""
Tests for ts_node.ingest module.
"""

from unittest.mock import patch

import pytest

from ts_node.errors import InvalidPoint, NoSuchInstrument, StoreUnavailable
from ts_node.ingest import IngestBatch, IngestWriter, sanitize_url


@pytest.fixture
def writer(store):
    return IngestWriter(store)


class TestBatchIngest:
    """Tests for IngestWriter.ingest."""

    def test_valid_and_unknown_variable_point(self, writer, weather_station, store):
        result = writer.ingest({
            "instrument_id": weather_station.id,
            "points": [
                {"variable": "temp", "timestamp_ms": 1000, "value": 21.5},
                {"variable": "humidity", "timestamp_ms": 1000, "value": 40.0},
            ],
        })

        assert result.accepted == 1
        assert result.rejected_count == 1
        assert result.rejected[0].reason == "UnknownVariable"
        assert result.rejected[0].index == 1
        assert store.count_points(weather_station.id) == 1

    def test_invalid_points_are_itemized(self, writer, weather_station):
        result = writer.ingest(IngestBatch(
            instrument_id=weather_station.id,
            points=[
                {"variable": "temp", "timestamp_ms": None, "value": 1.0},
                {"variable": "rh", "timestamp_ms": 1000, "value": "wet"},
                {"timestamp_ms": 1000, "value": 1.0},
                "garbage",
                {"variable": "pres", "timestamp_ms": 1000, "value": 850},
            ],
        ))

        assert result.accepted == 1
        assert [r.reason for r in result.rejected] == ["InvalidPoint"] * 4
        assert [r.index for r in result.rejected] == [0, 1, 2, 3]

    def test_iso_timestamps_are_accepted(self, writer, weather_station, store):
        result = writer.ingest({
            "instrument_id": weather_station.id,
            "points": [{"variable": "temp", "at": "1970-01-01T00:00:01Z", "value": 5}],
        })

        assert result.accepted == 1
        assert store.last_point(weather_station.id, "temp").timestamp_ms == 1000

    def test_unknown_instrument(self, writer):
        with pytest.raises(NoSuchInstrument):
            writer.ingest({"instrument_id": 99, "points": []})

    def test_missing_instrument_id(self, writer):
        with pytest.raises(InvalidPoint):
            writer.ingest({"points": []})

    def test_dry_run_writes_nothing(self, writer, weather_station, store):
        result = writer.ingest(
            {"instrument_id": weather_station.id, "points": [{"variable": "temp", "timestamp_ms": 1, "value": 1}]},
            dry_run=True,
        )

        assert result.accepted == 1
        assert result.dry_run
        assert store.count_points() == 0

    def test_store_failure_lands_nothing(self, writer, weather_station, store):
        batch = {
            "instrument_id": weather_station.id,
            "points": [
                {"variable": "temp", "timestamp_ms": 1, "value": 1},
                {"variable": "rh", "timestamp_ms": 1, "value": 2},
            ],
        }

        with patch.object(store, "append_many", side_effect=StoreUnavailable("disk gone")):
            with pytest.raises(StoreUnavailable):
                writer.ingest(batch)

        assert store.count_points() == 0

    def test_result_to_dict(self, writer, weather_station):
        result = writer.ingest({
            "instrument_id": weather_station.id,
            "points": [{"variable": "wind", "timestamp_ms": 1, "value": 1}],
        })

        payload = result.to_dict()

        assert payload["accepted"] == 0
        assert payload["rejected"][0]["reason"] == "UnknownVariable"
        assert "wind" in payload["rejected"][0]["message"]


class TestUrlIngest:
    """Tests for IngestWriter.ingest_query_params."""

    def test_each_parameter_is_a_variable(self, writer, weather_station, store):
        url = f"http://portal/measurements/url_create?instrument_id={weather_station.id}&temp=21.5&rh=40"
        result = writer.ingest_query_params(
            {
                "instrument_id": str(weather_station.id),
                "temp": "21.5",
                "rh": "40",
                "at": "2024-01-01T00:00:00Z",
                "key": "secret",
            },
            url=url,
        )

        assert result.accepted == 2
        assert result.rejected == []
        assert store.last_point(weather_station.id, "temp").timestamp_ms == 1704067200000
        assert store.get_instrument(weather_station.id).last_url == url

    def test_bad_values_rejected(self, writer, weather_station):
        result = writer.ingest_query_params({
            "instrument_id": str(weather_station.id),
            "temp": "warm",
            "wind": "3",
        })

        assert result.accepted == 0
        assert sorted(r.reason for r in result.rejected) == ["InvalidPoint", "UnknownVariable"]

    def test_test_flag_is_dry_run(self, writer, weather_station, store):
        result = writer.ingest_query_params(
            {"instrument_id": str(weather_station.id), "temp": "1", "test": ""},
            url="http://portal/x",
        )

        assert result.accepted == 1
        assert store.count_points() == 0
        assert store.get_instrument(weather_station.id).last_url is None

    def test_missing_or_bad_instrument_id(self, writer):
        with pytest.raises(InvalidPoint):
            writer.ingest_query_params({"temp": "1"})
        with pytest.raises(InvalidPoint):
            writer.ingest_query_params({"instrument_id": "abc"})

    def test_bad_time(self, writer, weather_station):
        with pytest.raises(InvalidPoint):
            writer.ingest_query_params({"instrument_id": str(weather_station.id), "temp": "1", "at": "not a time"})

    def test_credentials_never_reach_last_url(self, writer, weather_station, store):
        url = f"http://portal/measurements/url_create?instrument_id={weather_station.id}&temp=1&key=s3cret&api_key=k2"
        writer.ingest_query_params(
            {"instrument_id": str(weather_station.id), "temp": "1", "key": "s3cret", "api_key": "k2"},
            url=url,
        )

        last_url = store.get_instrument(weather_station.id).last_url
        assert last_url == f"http://portal/measurements/url_create?instrument_id={weather_station.id}&temp=1"


def test_sanitize_url():
    assert sanitize_url("http://h/p?temp=1&key=abc&email=a%40b.org") == "http://h/p?temp=1"
    assert sanitize_url("http://h/p") == "http://h/p"
