"""
Tests for ts_node.api - HTTP routes.
"""

import pytest
from fastapi.testclient import TestClient

from ts_node.api import create_app
from ts_node.config import NodeConfig
from ts_node.db import Measurement


@pytest.fixture
def client(store, temp_data_root):
    config = NodeConfig(db_path=store.db_path, retention="1h")
    app = create_app(config, store=store)
    return TestClient(app)


class TestIngestRoutes:

    def test_post_points_reports_partial_acceptance(self, client, weather_station):
        response = client.post(
            f"/instruments/{weather_station.id}/points",
            json={"points": [
                {"variable": "temp", "timestamp_ms": 1000, "value": 21.5},
                {"variable": "wind", "timestamp_ms": 1000, "value": 3.0},
            ]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["accepted"] == 1
        assert len(body["rejected"]) == 1
        assert body["rejected"][0]["reason"] == "UnknownVariable"

    def test_post_points_unknown_instrument(self, client):
        response = client.post("/instruments/77/points", json={"points": []})

        assert response.status_code == 404
        assert response.json()["error"] == "NoSuchInstrument"

    def test_url_create(self, client, store, weather_station):
        response = client.get(
            "/measurements/url_create",
            params={"instrument_id": weather_station.id, "temp": "20.5", "at": "2024-01-01T00:00:00Z"},
        )

        assert response.status_code == 200
        assert response.json()["accepted"] == 1
        inst = store.get_instrument(weather_station.id)
        assert inst.last_url is not None
        assert "url_create" in inst.last_url

    def test_url_create_keeps_credentials_out_of_last_url(self, client, store, weather_station):
        response = client.get(
            "/measurements/url_create",
            params={"instrument_id": weather_station.id, "temp": "20.5", "key": "s3cret", "email": "a@b.org"},
        )

        assert response.status_code == 200
        last_url = store.get_instrument(weather_station.id).last_url
        assert "s3cret" not in last_url
        assert "key=" not in last_url
        assert "email" not in last_url
        assert "temp=20.5" in last_url

        listed = client.get("/instruments").json()
        assert "s3cret" not in str(listed)

    def test_url_create_requires_instrument(self, client):
        response = client.get("/measurements/url_create", params={"temp": "1"})

        assert response.status_code == 422
        assert response.json()["error"] == "InvalidPoint"


class TestQueryRoutes:

    @pytest.fixture
    def loaded(self, store, weather_station):
        store.append_many([Measurement(weather_station.id, "temp", ts, ts / 100) for ts in (100, 200, 300)])
        return weather_station

    def test_window_query(self, client, loaded):
        response = client.get(f"/instruments/{loaded.id}/points", params={"var": "temp", "start": 100, "end": 200})

        assert response.status_code == 200
        assert response.json()["points"] == [
            {"timestamp_ms": 100, "value": 1.0},
            {"timestamp_ms": 200, "value": 2.0},
        ]

    def test_tail_query(self, client, loaded):
        response = client.get(f"/instruments/{loaded.id}/points", params={"var": "temp", "after": 100, "limit": 10})

        assert [p["timestamp_ms"] for p in response.json()["points"]] == [200, 300]

    def test_last_query(self, client, loaded):
        response = client.get(f"/instruments/{loaded.id}/points", params={"var": "temp", "last": "true"})

        assert [p["timestamp_ms"] for p in response.json()["points"]] == [300]

    def test_multi_variable_query(self, client, loaded):
        response = client.get(f"/instruments/{loaded.id}/points", params={"start": 0, "end": 1000})

        variables = response.json()["variables"]
        assert set(variables) == {"temp", "rh", "pres"}
        assert len(variables["temp"]) == 3

    def test_unknown_variable_is_404(self, client, loaded):
        response = client.get(f"/instruments/{loaded.id}/points", params={"var": "wind"})

        assert response.status_code == 404
        assert response.json()["error"] == "NoSuchVariable"

    def test_bad_time_is_422(self, client, loaded):
        response = client.get(f"/instruments/{loaded.id}/points", params={"var": "temp", "start": "yesterday-ish"})

        assert response.status_code == 422

    @pytest.mark.parametrize(
        "path, params",
        [
            ("points", {"var": "temp", "start": 0, "end": 10**20}),
            ("points", {"var": "temp", "after": -(10**20)}),
            ("points", {"var": "temp", "after": 100, "limit": 10**20}),
            ("live", {"var": "temp", "after": 10**20}),
        ],
    )
    def test_out_of_range_times_are_422(self, client, loaded, path, params):
        response = client.get(f"/instruments/{loaded.id}/{path}", params=params)

        assert response.status_code == 422

    def test_live(self, client, loaded):
        first = client.get(f"/instruments/{loaded.id}/live", params={"var": "temp"}).json()

        assert first["points"] == [[100, 1.0], [200, 2.0], [300, 3.0]]
        assert first["display_points"] == 5
        assert first["refresh_msecs"] == 2000

        later = client.get(f"/instruments/{loaded.id}/live", params={"var": "temp", "after": 200}).json()
        assert later["points"] == [[300, 3.0]]

    def test_live_reports_variable_display_cap(self, client, store, loaded):
        store.add_variable(loaded.id, "wind", maximum_plot_points=2)
        store.append_many([Measurement(loaded.id, "wind", ts, 1.0) for ts in (100, 200, 300)])

        body = client.get(f"/instruments/{loaded.id}/live", params={"var": "wind"}).json()

        assert body["display_points"] == 2
        assert body["points"] == [[200, 1.0], [300, 1.0]]

    def test_instrument_detail(self, client, loaded):
        body = client.get(f"/instruments/{loaded.id}").json()

        assert body["name"] == "Weather Station"
        assert body["point_count"] == 3
        assert [v["shortname"] for v in body["variables"]] == ["temp", "rh", "pres"]


class TestOperationalRoutes:

    def test_prune(self, client, store, weather_station):
        store.append(Measurement(weather_station.id, "temp", 0, 1.0))

        response = client.post("/retention/prune")

        assert response.status_code == 200
        assert response.json()["deleted"] == 1

    def test_live_feed_uses_query_timeout(self, store):
        app = create_app(NodeConfig(db_path=store.db_path, query_timeout_seconds=3.5), store=store)

        assert app.state.feed.default_timeout_seconds == 3.5
        assert app.state.engine.default_timeout_seconds == 3.5

    def test_health(self, client, weather_station):
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["store"]["instruments"] == 1
        assert body["retention"]["retention"] == "1h"
