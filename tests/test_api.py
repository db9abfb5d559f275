from datetime import datetime, timedelta
import sqlite3
from pathlib import Path
import sys

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import database
import web_server
from config import SESSION_COOKIE_NAME, Settings
from core.auth import create_user


def _make_client(tmp_path, **overrides):
    settings = Settings(
        database_path=str(tmp_path / "api.db"),
        scheduler_enabled=False,
        **overrides,
    )
    app = web_server.create_app(settings)
    database.init_database()
    return TestClient(app)


@pytest.fixture
def client(tmp_path):
    return _make_client(tmp_path)


@pytest.fixture
def station_id(client):
    sid = database.insert_station({"label": "Cluj", "label_name": "Cluj Centru", "ip": "10.0.0.11"})
    bucket = datetime.now().replace(minute=0, second=0, microsecond=0)
    database.upsert_hourly_health(sid, bucket.strftime(database.BUCKET_FORMAT), True, 90.0, 75.0)
    stamp = (datetime.now() - timedelta(minutes=5)).isoformat(timespec="seconds")
    database.insert_kv_snapshot(sid, "public", {"Batt": 12.8}, stamp)
    return sid


def test_station_routes(client, station_id):
    stations = client.get("/api/stations").json()
    assert [s["label"] for s in stations] == ["Cluj"]

    assert client.get(f"/api/stations/{station_id}").json()["ip"] == "10.0.0.11"
    assert client.get("/api/stations/999").status_code == 404

    response = client.get("/api/stations/abc")
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid station ID"}


def test_status_routes_shapes(client, station_id):
    status = client.get("/api/stations/station-status").json()
    assert status[0]["station_id"] == station_id
    assert len(status[0]["hourly_avg_array"]) == 24

    overview = client.get("/api/stations/station-overview").json()
    assert overview["success"] is True
    assert overview["data"][0]["_station_id"] == station_id

    week = client.get("/api/stations/hourly-average-fetch-health-7d").json()
    assert week["success"] is True
    assert len(week["data"]) == 56

    averages = client.get("/api/stations/average-status").json()
    assert averages[0]["avg_fetch_health_24h"] == 90.0


def test_overview_and_online_envelopes(client, station_id):
    overview = client.get("/api/overview-data-24h").json()
    online = client.get("/api/online-data-7d").json()

    assert overview == {
        "success": True,
        "data": [{"station_id": station_id, "station_online": True, "fetch_health": 90.0, "data_health": 75.0}],
    }
    assert online["success"] is True
    assert len(online["data"][0]["hourly_online_array"]) == 168
    assert online["data"][0]["hourly_online_array"][-1] is True


def test_response_times_envelope(client, station_id):
    database.insert_collector_response(station_id, datetime.now().isoformat(timespec="seconds"), 200, 250.0)

    body = client.get("/api/response-times").json()

    assert body["success"] is True
    assert body["data"][0]["avg_response_time_ms"] == 250.0


def test_kv_table_routes(client, station_id):
    latest = client.get(f"/api/stations/public-table/{station_id}").json()
    assert [(r["key"], r["value"]) for r in latest] == [("Batt", "12.8")]
    assert client.get(f"/api/stations/status-table/{station_id}").json() == []

    at = (datetime.now() + timedelta(hours=2)).isoformat()
    historical = client.get(f"/api/stations/public-table-datetime/{station_id}", params={"datetime": at})
    assert historical.json()[0]["value"] == "12.8"


@pytest.mark.parametrize("params, message", [
    ({}, "Datetime parameter is required"),
    ({"datetime": "yesterday-ish"}, "Invalid datetime format. Expected ISO string."),
])
def test_kv_datetime_validation(client, station_id, params, message):
    response = client.get(f"/api/stations/measurements-table-datetime/{station_id}", params=params)

    assert response.status_code == 400
    assert response.json() == {"error": message}


def test_kv_datetime_checks_station_id_first(client):
    response = client.get("/api/stations/status-table-datetime/x1", params={"datetime": "2024-01-01T00:00:00Z"})

    assert response.json() == {"error": "Invalid station ID"}


def test_advanced_table_serves_cache_only(client, station_id):
    miss = client.get("/api/stations/advanced-table")
    assert miss.status_code == 503
    assert miss.json()["retry_after"] == 30
    assert miss.json()["cache_status"]["hasData"] is False

    client.app.state.cache.set_data({"stations": [{"id": station_id}], "columnStructure": {}, "metadata": {}})
    hit = client.get("/api/stations/advanced-table")

    assert hit.status_code == 200
    assert hit.headers["cache-control"] == "public, max-age=300"
    assert hit.json()["stations"] == [{"id": station_id}]


def test_advanced_table_datetime_builds_from_snapshots(client, station_id):
    at = (datetime.now() + timedelta(hours=1)).isoformat()

    body = client.get("/api/stations/advanced-table-datetime", params={"datetime": at}).json()

    assert body["stations"][0]["public_data"] == {"Batt": "12.8"}
    assert body["metadata"]["publicKeys"] == ["Batt"]
    assert client.get("/api/stations/advanced-table-datetime").status_code == 400


def test_login_me_logout_flow(client):
    create_user("ops@example.com", "hunter2")

    assert client.get("/api/users/me").status_code == 401
    bad = client.post("/api/users/login", json={"email": "ops@example.com", "password": "x"})
    assert bad.status_code == 401

    response = client.post("/api/users/login", json={"email": "ops@example.com", "password": "hunter2"})
    assert response.status_code == 200
    assert response.json() == {"message": "Logged in"}
    assert client.cookies.get(SESSION_COOKIE_NAME)

    assert client.get("/api/users/me").json()["user"]["email"] == "ops@example.com"

    assert client.post("/api/users/logout").json() == {"message": "Logged out"}
    assert client.get("/api/users/me").status_code == 401


def test_auth_middleware_flag_protects_logout(tmp_path):
    client = _make_client(tmp_path, enable_auth_middleware=True)

    response = client.post("/api/users/logout")

    assert response.status_code == 401
    assert response.json()["user"] is None


def test_health_reports_scheduler(client):
    body = client.get("/health").json()

    assert body["status"] == "Backend running"
    assert body["scheduler"]["isRunning"] is False


def test_storage_failures_return_json_errors(client, monkeypatch):
    def _locked():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(database, "fetch_stations", _locked)

    response = client.get("/api/stations")

    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error"}


def test_unreadable_database_returns_json_errors(client, tmp_path, monkeypatch):
    # A directory cannot be opened as a database file
    monkeypatch.setattr(database, "_database_path", str(tmp_path))

    for path in ("/api/stations/average-status", "/api/stations/1", "/api/stations/get-names"):
        response = client.get(path)
        assert response.status_code == 500
        assert response.json() == {"error": "Internal Server Error"}
    assert client.get("/api/stations/public-table/1").json() == []
