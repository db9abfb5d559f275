import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import database


NOW = datetime(2024, 5, 10, 14, 25)


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "_database_path", str(tmp_path / "stations.db"))
    database.init_database()
    return database


def _bucket(hours_ago: int) -> str:
    return (NOW.replace(minute=0) - timedelta(hours=hours_ago)).strftime(database.BUCKET_FORMAT)


def test_hour_buckets_end_at_current_hour():
    buckets = database.hour_buckets(NOW, 24)

    assert len(buckets) == 24
    assert buckets[-1] == "2024-05-10T14:00"
    assert buckets[0] == "2024-05-09T15:00"


def test_three_hour_buckets_for_week():
    buckets = database.hour_buckets(NOW, 168, step=3)

    assert len(buckets) == 56
    assert buckets[-1] == "2024-05-10T12:00"


def test_auto_migrate_adds_missing_columns(tmp_path, monkeypatch):
    path = tmp_path / "old.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE stations (id INTEGER PRIMARY KEY AUTOINCREMENT, label TEXT)")
    conn.commit()
    conn.close()
    monkeypatch.setattr(database, "_database_path", str(path))

    database.init_database()

    with database.get_connection() as conn:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(stations)").fetchall()}
    assert {"label_name", "ip", "sms_number"} <= columns


def test_online_data_fills_missing_hours(db):
    sid = db.insert_station({"label": "A"})
    db.upsert_hourly_health(sid, _bucket(0), True, 95.0, 80.0)
    db.upsert_hourly_health(sid, _bucket(1), False, 0.0, None)

    (row,) = db.get_online_data("24h", now=NOW)

    assert row["station_id"] == sid
    assert len(row["hour_bucket_local"]) == 24
    assert row["hourly_online_array"][-2:] == [False, True]
    assert row["hourly_health_array"][-1] == 80.0
    assert row["hourly_online_array"][0] is False
    assert row["hourly_health_array"][0] is None


def test_unknown_period_raises(db):
    with pytest.raises(ValueError):
        db.get_online_data("30d", now=NOW)


def test_average_status_windows(db):
    sid = db.insert_station({"label": "A"})
    db.upsert_hourly_health(sid, _bucket(0), True, 100.0, 90.0)
    db.upsert_hourly_health(sid, _bucket(1), True, 50.0, 70.0)
    db.upsert_hourly_health(sid, _bucket(48), True, 0.0, 20.0)

    (row,) = db.get_average_status(now=NOW)

    assert row["avg_fetch_health_24h"] == 75.0
    assert row["avg_fetch_health_7d"] == 50.0
    assert row["avg_data_health_24h"] == 80.0
    assert row["avg_data_health_7d"] == 60.0


def test_station_status_uses_zero_for_missing_hours(db):
    sid = db.insert_station({"label": "A"})
    db.upsert_hourly_health(sid, _bucket(0), True, 88.5, 80.0)

    (row,) = db.get_station_hourly_health(now=NOW)

    assert row["hourly_avg_array"][-1] == 88.5
    assert row["hourly_avg_array"][0] == 0


def test_network_average_fetch_health(db):
    a = db.insert_station({"label": "A"})
    b = db.insert_station({"label": "B"})
    db.upsert_hourly_health(a, _bucket(0), True, 100.0, 90.0)
    db.upsert_hourly_health(b, _bucket(0), True, 50.0, 90.0)

    day = db.get_hourly_avg_fetch_health("24h", now=NOW)
    week = db.get_hourly_avg_fetch_health("7d", now=NOW)

    assert day[-1] == {"hour_bucket_local": "2024-05-10T14:00", "avg_fetch_health": 75.0}
    assert day[0]["avg_fetch_health"] == 0.0
    assert week[-1] == {"hour_bucket_local": "2024-05-10T12:00", "avg_fetch_health": 75.0}


def test_overview_reports_latest_online_flag(db):
    sid = db.insert_station({"label": "A"})
    db.upsert_hourly_health(sid, _bucket(2), True, 90.0, 90.0)
    db.upsert_hourly_health(sid, _bucket(0), False, 0.0, None)

    (row,) = db.get_overview_data("24h", now=NOW)

    assert row["station_online"] is False
    assert row["fetch_health"] == 45.0
    assert row["data_health"] == 90.0


def test_kv_table_latest_and_shifted_lookup(db):
    sid = db.insert_station({"label": "A"})
    db.insert_kv_snapshot(sid, "public", {"Batt": 12.5, "PTemp": 20}, "2024-05-10T10:00:00")
    db.insert_kv_snapshot(sid, "public", {"Batt": 12.7, "PTemp": 21}, "2024-05-10T11:00:00")

    latest = db.get_kv_table(sid, "public")
    # 11:30 minus the one hour shift selects the 10:00 snapshot
    earlier = db.get_kv_table(sid, "public", at=datetime(2024, 5, 10, 11, 30))
    aware = db.get_kv_table(sid, "public", at=datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc))

    assert [r["key"] for r in latest] == ["Batt", "PTemp"]
    assert latest[0]["value"] == "12.7"
    assert earlier[0]["value"] == "12.5"
    assert aware[0]["station_timestamp"] == "2024-05-10T11:00:00"
    assert db.get_kv_table(sid, "public", at=datetime(2024, 5, 10, 9, 0)) == []


def test_kv_table_rejects_unknown_table(db):
    with pytest.raises(ValueError):
        db.get_kv_table(1, "secrets")


def test_response_times(db):
    sid = db.insert_station({"label": "A"})
    db.insert_collector_response(sid, (NOW - timedelta(hours=2)).isoformat(), 200, 100.0)
    db.insert_collector_response(sid, (NOW - timedelta(hours=1)).isoformat(), 504, 300.0)
    db.insert_collector_response(sid, (NOW - timedelta(hours=30)).isoformat(), 200, 5000.0)

    (row,) = db.get_response_times(now=NOW)

    assert row == {
        "station_id": sid,
        "avg_response_time_ms": 200.0,
        "last_response_code": 504,
        "samples": 2,
    }


def test_preferences_round_trip(db):
    db.set_preference("k", "v1")
    db.set_preference("k", "v2")

    assert db.get_preference("k") == "v2"
    db.delete_preference("k")
    assert db.get_preference("k") is None
