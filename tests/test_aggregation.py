from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.aggregation import (
    parse_bucket,
    process_health_data,
    process_online_data,
    summarize_online,
)
from core.models import HourlyStationSample


def test_single_station_example_counts_and_health():
    data = [{
        "station_id": 1,
        "hourly_online_array": [True, False],
        "hourly_health_array": [80, 0],
        "hour_bucket_local": ["2024-01-01T00:00", "2024-01-01T01:00"],
    }]

    online = [p.to_dict() for p in process_online_data(data)]
    health = [p.to_dict() for p in process_health_data(data)]

    assert online == [
        {"timestamp": "2024-01-01T00:00", "online": 1, "offline": 0},
        {"timestamp": "2024-01-01T01:00", "online": 0, "offline": 1},
    ]
    assert health == [
        {"timestamp": "2024-01-01T00:00", "avgHealth": 80, "minHealth": 80, "maxHealth": 80},
        {"timestamp": "2024-01-01T01:00", "avgHealth": 0, "minHealth": 0, "maxHealth": 0},
    ]


def test_output_sorted_without_duplicate_buckets():
    data = [
        {
            "station_id": 1,
            "hourly_online_array": [True, True, False],
            "hourly_health_array": [10, 20, 30],
            "hour_bucket_local": ["2024-01-01T02:00", "2024-01-01T00:00", "2024-01-01T01:00"],
        },
        {
            "station_id": 2,
            "hourly_online_array": [False, True],
            "hourly_health_array": [5, None],
            "hour_bucket_local": ["2024-01-01T01:00", "2024-01-01T02:00"],
        },
    ]

    for points in (process_online_data(data), process_health_data(data)):
        stamps = [p.timestamp for p in points]
        assert stamps == ["2024-01-01T00:00", "2024-01-01T01:00", "2024-01-01T02:00"]
        assert len(set(stamps)) == len(stamps)


def test_all_online_bucket_counts_every_station():
    data = [
        HourlyStationSample(
            station_id=i,
            hourly_online_array=[True],
            hourly_health_array=[50.0],
            hour_bucket_local=["2024-03-10T12:00"],
        )
        for i in range(5)
    ]

    (point,) = process_online_data(data)

    assert point.online == 5
    assert point.offline == 0


def test_null_health_counts_as_zero_in_average_only():
    data = [
        {"station_id": 1, "hourly_online_array": [True], "hourly_health_array": [90],
         "hour_bucket_local": ["2024-01-01T00:00"]},
        {"station_id": 2, "hourly_online_array": [True], "hourly_health_array": [None],
         "hour_bucket_local": ["2024-01-01T00:00"]},
        {"station_id": 3, "hourly_online_array": [True], "hourly_health_array": [60],
         "hour_bucket_local": ["2024-01-01T00:00"]},
    ]

    (point,) = process_health_data(data)

    assert point.avg_health == 50.0
    assert point.min_health == 60
    assert point.max_health == 90


def test_average_is_rounded_to_two_decimals():
    data = [
        {"station_id": i, "hourly_online_array": [True], "hourly_health_array": [v],
         "hour_bucket_local": ["2024-01-01T00:00"]}
        for i, v in enumerate([10, 10, 11])
    ]

    (point,) = process_health_data(data)

    assert point.avg_health == 10.33


def test_rounding_ties_go_up():
    data = [{"station_id": 1, "hourly_online_array": [True, True], "hourly_health_array": [80.125, 0.625],
             "hour_bucket_local": ["2024-01-01T00:00", "2024-01-01T01:00"]}]

    first, second = process_health_data(data)

    assert (first.avg_health, first.min_health, first.max_health) == (80.13, 80.13, 80.13)
    assert second.avg_health == 0.63


def test_samples_without_bucket_are_skipped():
    data = [{
        "station_id": 1,
        "hourly_online_array": [True, True],
        "hourly_health_array": [50, 60],
        "hour_bucket_local": ["2024-01-01T00:00"],
    }]

    assert [p.timestamp for p in process_online_data(data)] == ["2024-01-01T00:00"]
    assert process_health_data([]) == []


def test_parse_bucket_handles_offset_suffixes():
    assert parse_bucket("2025-10-02 09:50:00+00").isoformat() == "2025-10-02T09:50:00"
    assert parse_bucket("2025-10-02T11:50:00+02:00").isoformat() == "2025-10-02T09:50:00"
    assert parse_bucket("2024-01-01T00:00Z").isoformat() == "2024-01-01T00:00:00"
    assert parse_bucket("not a time") is None


def test_summarize_online_uses_latest_bucket():
    points = process_online_data([
        {"station_id": 1, "hourly_online_array": [False, True],
         "hour_bucket_local": ["2024-01-01T00:00", "2024-01-01T01:00"]},
        {"station_id": 2, "hourly_online_array": [True, False],
         "hour_bucket_local": ["2024-01-01T00:00", "2024-01-01T01:00"]},
    ])

    summary = summarize_online(points)

    assert summary["timestamp"] == "2024-01-01T01:00"
    assert summary["online"] == 1
    assert summary["online_pct"] == 50.0
    assert summarize_online([])["total"] == 0
