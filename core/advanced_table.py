"""
Advanced table payload: every station with its averages, hourly status and the
latest public/status/measurements key/value snapshots, plus the set of keys
seen across the network (used to build dynamic grid columns).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("advanced_table")

BASIC_FIELDS = (
    "id", "label", "label_id", "label_name", "label_type",
    "latitude", "longitude", "altitude", "ip", "sms_number",
)


def key_value_to_dict(rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return {row["key"]: row.get("value") for row in rows}


def _first_timestamp(rows: List[Dict[str, Any]]) -> Optional[str]:
    return rows[0].get("station_timestamp") if rows else None


def _iso_now(now: Optional[datetime]) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def build_station_row(
    station: Dict[str, Any],
    hourly_status: Optional[Dict[str, Any]],
    avg_status: Optional[Dict[str, Any]],
    kv: Optional[Dict[str, List[Dict[str, Any]]]],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    hourly_status = hourly_status or {}
    avg_status = avg_status or {}
    kv = kv or {}
    public_rows = kv.get("public") or []
    status_rows = kv.get("status") or []
    measurement_rows = kv.get("measurements") or []

    row = {name: station.get(name) for name in BASIC_FIELDS}
    row.update({
        "avg_fetch_health_7d": avg_status.get("avg_fetch_health_7d") or 0,
        "avg_fetch_health_24h": avg_status.get("avg_fetch_health_24h") or 0,
        "avg_data_health_7d": avg_status.get("avg_data_health_7d") or 0,
        "avg_data_health_24h": avg_status.get("avg_data_health_24h") or 0,
        "hourly_status": list(hourly_status.get("hourly_avg_array") or []),
        "hourly_timestamps": list(hourly_status.get("hour_bucket_local") or []),
        "public_data": key_value_to_dict(public_rows),
        "public_timestamp": _first_timestamp(public_rows),
        "status_data": key_value_to_dict(status_rows),
        "status_timestamp": _first_timestamp(status_rows),
        "measurements_data": key_value_to_dict(measurement_rows),
        "measurements_timestamp": _first_timestamp(measurement_rows),
        "last_updated": _iso_now(now),
        "total_measurements": len(measurement_rows),
    })
    return row


def fallback_station_row(station: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Basic station data with zeroed status, used when its table data failed."""
    row = {name: station.get(name) for name in BASIC_FIELDS}
    row.update({
        "avg_fetch_health_7d": 0,
        "avg_fetch_health_24h": 0,
        "avg_data_health_7d": 0,
        "avg_data_health_24h": 0,
        "hourly_status": [],
        "hourly_timestamps": [],
        "public_data": {},
        "public_timestamp": None,
        "status_data": {},
        "status_timestamp": None,
        "measurements_data": {},
        "measurements_timestamp": None,
        "last_updated": _iso_now(now),
        "total_measurements": 0,
    })
    return row


def build_advanced_table(
    stations: List[Dict[str, Any]],
    hourly_statuses: List[Dict[str, Any]],
    avg_statuses: List[Dict[str, Any]],
    kv_by_station: Dict[Any, Dict[str, List[Dict[str, Any]]]],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Combine the per-station sources into ``{stations, columnStructure, metadata}``."""
    hourly_by_id = {s.get("station_id"): s for s in hourly_statuses}
    avg_by_id = {s.get("station_id"): s for s in avg_statuses}

    rows = []
    for station in stations:
        station_id = station.get("id")
        try:
            rows.append(build_station_row(
                station,
                hourly_by_id.get(station_id),
                avg_by_id.get(station_id),
                kv_by_station.get(station_id),
                now=now,
            ))
        except (KeyError, TypeError, AttributeError) as e:
            logger.error("Error building row for station %s: %s", station_id, e)
            rows.append(fallback_station_row(station, now=now))

    public_keys: Dict[str, None] = {}
    status_keys: Dict[str, None] = {}
    measurement_keys: Dict[str, None] = {}
    for row in rows:
        public_keys.update(dict.fromkeys(row["public_data"]))
        status_keys.update(dict.fromkeys(row["status_data"]))
        measurement_keys.update(dict.fromkeys(row["measurements_data"]))

    logger.info(
        "Aggregated keys: public=%d status=%d measurements=%d",
        len(public_keys), len(status_keys), len(measurement_keys),
    )

    return {
        "stations": rows,
        "columnStructure": {
            "public_data": {key: "" for key in public_keys},
            "status_data": {key: "" for key in status_keys},
            "measurements_data": {key: "" for key in measurement_keys},
        },
        "metadata": {
            "publicKeys": sorted(public_keys, key=str.lower),
            "statusKeys": sorted(status_keys, key=str.lower),
            "measurementKeys": sorted(measurement_keys, key=str.lower),
            "totalStations": len(rows),
            "generatedAt": _iso_now(now),
        },
    }


def fetch_advanced_station_data(at: Optional[datetime] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Read every source from the database and build the payload.

    ``at`` selects key/value snapshots as of that time instead of the latest.
    A station whose key/value tables fail to load still appears with empty maps.
    """
    from database import (
        StorageError,
        fetch_stations,
        get_average_status,
        get_kv_table,
        get_station_hourly_health,
    )
    from config import KV_TABLES

    stations = fetch_stations()
    logger.info("Fetched stations count: %d", len(stations))
    hourly = get_station_hourly_health(now=now)
    averages = get_average_status(now=now)

    kv_by_station: Dict[Any, Dict[str, List[Dict[str, Any]]]] = {}
    for station in stations:
        station_id = station["id"]
        tables: Dict[str, List[Dict[str, Any]]] = {}
        for table_name in KV_TABLES:
            try:
                tables[table_name] = get_kv_table(station_id, table_name, at=at)
            except StorageError as e:
                logger.error("Failed to fetch %s table for station %s: %s", table_name, station_id, e)
                tables[table_name] = []
        kv_by_station[station_id] = tables

    return build_advanced_table(stations, hourly, averages, kv_by_station, now=now)
