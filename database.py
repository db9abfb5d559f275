"""
Station Monitor - Database Module
SQLite storage for pre-aggregated station telemetry, key/value snapshots,
users, sessions and server-side preferences.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Iterator, List, Sequence
from contextlib import contextmanager

from config import DATABASE_PATH, KV_TABLES, KV_DATETIME_SHIFT_HOURS

logger = logging.getLogger("database")


class StorageError(Exception):
    """Raised when a storage operation cannot be completed."""


# ============================================================================
# DATABASE SCHEMA
# ============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS stations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    label TEXT,
    label_id TEXT,
    label_name TEXT,
    label_type TEXT,
    latitude REAL,
    longitude REAL,
    altitude REAL,
    ip TEXT,
    sms_number TEXT,
    county TEXT,
    collect_enabled INTEGER DEFAULT 1
);

-- One row per station per local hour bucket (pre-aggregated by the collector)
CREATE TABLE IF NOT EXISTS station_hourly_health (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    station_id INTEGER NOT NULL,
    hour_bucket TEXT NOT NULL,        -- local hour, e.g. 2024-01-01T13:00
    online INTEGER NOT NULL DEFAULT 0,
    fetch_health REAL,                -- Online %
    data_health REAL,                 -- Health %

    UNIQUE(station_id, hour_bucket)
);

CREATE INDEX IF NOT EXISTS idx_hourly_health_bucket
ON station_hourly_health(hour_bucket);

-- Key/value snapshots from the station data logger tables
CREATE TABLE IF NOT EXISTS collector_data_kv (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    station_id INTEGER NOT NULL,
    table_name TEXT NOT NULL,         -- 'public', 'status', 'measurements'
    key TEXT NOT NULL,
    value TEXT,
    station_timestamp TEXT NOT NULL,
    server_timestamp TEXT
);

CREATE INDEX IF NOT EXISTS idx_kv_lookup
ON collector_data_kv(station_id, table_name, station_timestamp);

-- Per-request collector metrics
CREATE TABLE IF NOT EXISTS collector_responses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    station_id INTEGER NOT NULL,
    server_timestamp TEXT NOT NULL,
    response_code INTEGER,
    response_time REAL,               -- milliseconds
    response_length INTEGER
);

CREATE INDEX IF NOT EXISTS idx_responses_station_time
ON collector_responses(station_id, server_timestamp);

CREATE TABLE IF NOT EXISTS field_names (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS sessions (
    token TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    expires_at TEXT NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

-- Server-backed UI preferences (table state etc.)
CREATE TABLE IF NOT EXISTS preferences (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
);
"""

_database_path = DATABASE_PATH


def configure(path: str) -> None:
    """Point the module at a database file (called once at startup)."""
    global _database_path
    _database_path = str(path)


def get_database_path() -> str:
    return _database_path


# ============================================================================
# DATABASE CONNECTION
# ============================================================================

@contextmanager
def get_connection():
    """Context manager for database connections. SQLite failures surface as StorageError."""
    try:
        conn = sqlite3.connect(_database_path)
    except sqlite3.Error as e:
        raise StorageError(f"Cannot open database {_database_path}: {e}") from e
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise StorageError(str(e)) from e
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _auto_migrate(conn) -> int:
    """Auto-migrate: add any columns defined in SCHEMA but missing from the real DB."""
    tmp = sqlite3.connect(":memory:")
    tmp.executescript(SCHEMA)

    tmp_tables = {row[0] for row in tmp.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    ).fetchall()}

    migrated = 0
    for table in tmp_tables:
        expected = {row[1]: row[2] for row in tmp.execute(
            f"PRAGMA table_info({table})"
        ).fetchall()}

        actual = {row[1] for row in conn.execute(
            f"PRAGMA table_info({table})"
        ).fetchall()}

        for col_name, col_type in expected.items():
            if col_name not in actual:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_type}")
                logger.info("[MIGRATE] %s.%s (%s)", table, col_name, col_type)
                migrated += 1

    tmp.close()
    return migrated


def init_database() -> None:
    """Initialize the database schema and auto-migrate missing columns."""
    with get_connection() as conn:
        conn.executescript(SCHEMA)
        migrated = _auto_migrate(conn)
    if migrated:
        logger.info("[MIGRATE] Added %d missing column(s)", migrated)
    logger.info("Database initialized: %s", _database_path)


# ============================================================================
# TIME WINDOW HELPERS
# ============================================================================

BUCKET_FORMAT = "%Y-%m-%dT%H:00"

WINDOW_HOURS = {"24h": 24, "7d": 168}


def floor_hour(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


def hour_buckets(now: Optional[datetime] = None, hours: int = 24, step: int = 1) -> List[str]:
    """Bucket strings ending at the current hour, oldest first."""
    end = floor_hour(now or datetime.now())
    if step > 1:
        end = end.replace(hour=end.hour - (end.hour % step))
    count = max(1, hours // step)
    return [
        (end - timedelta(hours=step * (count - 1 - i))).strftime(BUCKET_FORMAT)
        for i in range(count)
    ]


def _window_hours(period: str) -> int:
    try:
        return WINDOW_HOURS[period]
    except KeyError:
        raise ValueError(f"Unknown period: {period}") from None


def _normalize_timestamp(moment: datetime) -> str:
    """Naive ISO string comparable with stored station timestamps."""
    if moment.tzinfo is not None:
        moment = moment.replace(tzinfo=None) - (moment.utcoffset() or timedelta(0))
    return moment.isoformat(timespec="seconds")


def _hourly_rows(conn, first_bucket: str, last_bucket: str) -> Dict[int, Dict[str, sqlite3.Row]]:
    cursor = conn.execute(
        """
        SELECT station_id, hour_bucket, online, fetch_health, data_health
        FROM station_hourly_health
        WHERE hour_bucket >= ? AND hour_bucket <= ?
        """,
        (first_bucket, last_bucket),
    )
    by_station: Dict[int, Dict[str, sqlite3.Row]] = {}
    for row in cursor.fetchall():
        by_station.setdefault(row["station_id"], {})[row["hour_bucket"]] = row
    return by_station


def _station_ids(conn) -> List[int]:
    return [row[0] for row in conn.execute("SELECT id FROM stations ORDER BY id").fetchall()]


def _avg(values: Sequence[Optional[float]]) -> float:
    present = [float(v) for v in values if v is not None]
    if not present:
        return 0.0
    return round(sum(present) / len(present), 2)


# ============================================================================
# STATION OPERATIONS
# ============================================================================

STATION_COLUMNS = [
    "label", "label_id", "label_name", "label_type",
    "latitude", "longitude", "altitude", "ip", "sms_number", "county", "collect_enabled",
]


def insert_station(data: Dict[str, Any]) -> int:
    """Insert a station and return its id."""
    columns = [c for c in ["id"] + STATION_COLUMNS if c in data]
    placeholders = ", ".join(["?" for _ in columns])
    column_names = ", ".join(columns)
    with get_connection() as conn:
        cursor = conn.execute(
            f"INSERT INTO stations ({column_names}) VALUES ({placeholders})",
            [data.get(col) for col in columns],
        )
        return cursor.lastrowid


def fetch_stations() -> List[Dict[str, Any]]:
    with get_connection() as conn:
        cursor = conn.execute("SELECT * FROM stations ORDER BY id")
        return [dict(row) for row in cursor.fetchall()]


def fetch_station_by_id(station_id: int) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM stations WHERE id = ?", (station_id,)).fetchone()
        return dict(row) if row else None


def fetch_field_names() -> List[Dict[str, Any]]:
    with get_connection() as conn:
        cursor = conn.execute("SELECT * FROM field_names ORDER BY id")
        return [dict(row) for row in cursor.fetchall()]


# ============================================================================
# HOURLY HEALTH OPERATIONS
# ============================================================================

def upsert_hourly_health(
    station_id: int,
    hour_bucket: str,
    online: bool,
    fetch_health: Optional[float],
    data_health: Optional[float],
) -> None:
    """Insert or replace one pre-aggregated hourly sample."""
    with get_connection() as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO station_hourly_health
            (station_id, hour_bucket, online, fetch_health, data_health)
            VALUES (?, ?, ?, ?, ?)
            """,
            (station_id, hour_bucket, 1 if online else 0, fetch_health, data_health),
        )


def get_online_data(period: str = "24h", now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    Per-station parallel hourly arrays for the online/health charts.

    Hours without a stored sample are reported offline with a null health value.
    """
    buckets = hour_buckets(now, _window_hours(period))
    with get_connection() as conn:
        by_station = _hourly_rows(conn, buckets[0], buckets[-1])
        station_ids = _station_ids(conn)

    result = []
    for station_id in station_ids:
        rows = by_station.get(station_id, {})
        online, health = [], []
        for bucket in buckets:
            row = rows.get(bucket)
            online.append(bool(row["online"]) if row is not None else False)
            health.append(row["data_health"] if row is not None else None)
        result.append({
            "station_id": station_id,
            "hourly_online_array": online,
            "hourly_health_array": health,
            "hour_bucket_local": list(buckets),
        })
    return result


def get_station_hourly_health(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Hourly fetch health (Online %) per station over the last 24 hours."""
    buckets = hour_buckets(now, 24)
    with get_connection() as conn:
        by_station = _hourly_rows(conn, buckets[0], buckets[-1])
        station_ids = _station_ids(conn)

    result = []
    for station_id in station_ids:
        rows = by_station.get(station_id, {})
        result.append({
            "station_id": station_id,
            "hourly_avg_array": [
                (rows[b]["fetch_health"] or 0) if b in rows else 0 for b in buckets
            ],
            "hour_bucket_local": list(buckets),
        })
    return result


def get_station_overview(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Hourly network and data health per station over the last 24 hours."""
    buckets = hour_buckets(now, 24)
    with get_connection() as conn:
        by_station = _hourly_rows(conn, buckets[0], buckets[-1])
        station_ids = _station_ids(conn)

    result = []
    for station_id in station_ids:
        rows = by_station.get(station_id, {})
        result.append({
            "_station_id": station_id,
            "hourly_network_health": [rows[b]["fetch_health"] if b in rows else None for b in buckets],
            "hourly_data_health": [rows[b]["data_health"] if b in rows else None for b in buckets],
            "hour_bucket_local": list(buckets),
        })
    return result


def get_hourly_avg_fetch_health(
    period: str = "24h",
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Network-wide average fetch health per bucket.

    24h uses hourly buckets; 7d uses 3-hour buckets.
    """
    hours = _window_hours(period)
    step = 3 if period == "7d" else 1
    buckets = hour_buckets(now, hours, step=step)
    last_hour = floor_hour(now or datetime.now()).strftime(BUCKET_FORMAT)

    with get_connection() as conn:
        cursor = conn.execute(
            """
            SELECT hour_bucket, fetch_health FROM station_hourly_health
            WHERE hour_bucket >= ? AND hour_bucket <= ?
            """,
            (buckets[0], max(buckets[-1], last_hour)),
        )
        grouped: Dict[str, List[Optional[float]]] = {b: [] for b in buckets}
        for row in cursor.fetchall():
            moment = datetime.strptime(row["hour_bucket"], BUCKET_FORMAT)
            if step > 1:
                moment = moment.replace(hour=moment.hour - (moment.hour % step))
            key = moment.strftime(BUCKET_FORMAT)
            if key in grouped:
                grouped[key].append(row["fetch_health"])

    return [
        {"hour_bucket_local": bucket, "avg_fetch_health": _avg(grouped[bucket])}
        for bucket in buckets
    ]


def get_average_status(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Average fetch/data health per station over 24h and 7d (station_health_summary)."""
    buckets_7d = hour_buckets(now, 168)
    first_24h = buckets_7d[-24]
    with get_connection() as conn:
        by_station = _hourly_rows(conn, buckets_7d[0], buckets_7d[-1])
        station_ids = _station_ids(conn)

    result = []
    for station_id in station_ids:
        rows = list(by_station.get(station_id, {}).values())
        recent = [r for r in rows if r["hour_bucket"] >= first_24h]
        result.append({
            "station_id": station_id,
            "avg_fetch_health_24h": _avg([r["fetch_health"] for r in recent]),
            "avg_fetch_health_7d": _avg([r["fetch_health"] for r in rows]),
            "avg_data_health_24h": _avg([r["data_health"] for r in recent]),
            "avg_data_health_7d": _avg([r["data_health"] for r in rows]),
        })
    return result


def get_overview_data(period: str = "24h", now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Current online flag plus window averages for every station."""
    buckets = hour_buckets(now, _window_hours(period))
    with get_connection() as conn:
        by_station = _hourly_rows(conn, buckets[0], buckets[-1])
        station_ids = _station_ids(conn)

    result = []
    for station_id in station_ids:
        rows = by_station.get(station_id, {})
        latest = rows[max(rows)] if rows else None
        result.append({
            "station_id": station_id,
            "station_online": bool(latest["online"]) if latest is not None else False,
            "fetch_health": _avg([r["fetch_health"] for r in rows.values()]),
            "data_health": _avg([r["data_health"] for r in rows.values()]),
        })
    return result


# ============================================================================
# COLLECTOR RESPONSE OPERATIONS
# ============================================================================

def insert_collector_response(
    station_id: int,
    server_timestamp: str,
    response_code: int,
    response_time: float,
    response_length: int = 0,
) -> int:
    with get_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO collector_responses
            (station_id, server_timestamp, response_code, response_time, response_length)
            VALUES (?, ?, ?, ?, ?)
            """,
            (station_id, server_timestamp, response_code, response_time, response_length),
        )
        return cursor.lastrowid


def get_response_times(now: Optional[datetime] = None, hours: int = 24) -> List[Dict[str, Any]]:
    """Average collector response time and last response code per station."""
    since = ((now or datetime.now()) - timedelta(hours=hours)).isoformat(timespec="seconds")
    with get_connection() as conn:
        cursor = conn.execute(
            """
            SELECT r.station_id,
                   AVG(r.response_time) AS avg_response_time_ms,
                   COUNT(*) AS samples,
                   (SELECT response_code FROM collector_responses l
                    WHERE l.station_id = r.station_id AND l.server_timestamp >= ?
                    ORDER BY l.server_timestamp DESC LIMIT 1) AS last_response_code
            FROM collector_responses r
            WHERE r.server_timestamp >= ?
            GROUP BY r.station_id
            ORDER BY r.station_id
            """,
            (since, since),
        )
        return [
            {
                "station_id": row["station_id"],
                "avg_response_time_ms": round(row["avg_response_time_ms"] or 0.0, 2),
                "last_response_code": row["last_response_code"],
                "samples": row["samples"],
            }
            for row in cursor.fetchall()
        ]


# ============================================================================
# KEY/VALUE SNAPSHOT OPERATIONS
# ============================================================================

def _check_table(table_name: str) -> None:
    if table_name not in KV_TABLES:
        raise ValueError(f"Unknown key/value table: {table_name}")


def insert_kv_snapshot(
    station_id: int,
    table_name: str,
    values: Dict[str, Any],
    station_timestamp: str,
) -> int:
    """Store one snapshot (all keys share a station timestamp)."""
    _check_table(table_name)
    with get_connection() as conn:
        conn.executemany(
            """
            INSERT INTO collector_data_kv
            (station_id, table_name, key, value, station_timestamp, server_timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (station_id, table_name, key, None if value is None else str(value),
                 station_timestamp, datetime.now().isoformat(timespec="seconds"))
                for key, value in values.items()
            ],
        )
    return len(values)


def get_kv_table(
    station_id: int,
    table_name: str,
    at: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Latest key/value snapshot for a station table.

    With ``at`` the snapshot is the newest one at or before ``at`` minus
    the collector clock shift.
    """
    _check_table(table_name)
    params: List[Any] = [station_id, table_name]
    clause = ""
    if at is not None:
        cutoff = at - timedelta(hours=KV_DATETIME_SHIFT_HOURS)
        clause = "AND station_timestamp <= ?"
        params.append(_normalize_timestamp(cutoff))

    try:
        with get_connection() as conn:
            latest = conn.execute(
                f"""
                SELECT MAX(station_timestamp) FROM collector_data_kv
                WHERE station_id = ? AND table_name = ? {clause}
                """,
                params,
            ).fetchone()[0]
            if latest is None:
                return []
            cursor = conn.execute(
                """
                SELECT station_id, table_name, key, value, station_timestamp
                FROM collector_data_kv
                WHERE station_id = ? AND table_name = ? AND station_timestamp = ?
                ORDER BY key
                """,
                (station_id, table_name, latest),
            )
            return [dict(row) for row in cursor.fetchall()]
    except StorageError as e:
        raise StorageError(f"Failed to read {table_name} table for station {station_id}: {e}") from e


def iter_kv_tables(
    station_ids: Sequence[int],
    at: Optional[datetime] = None,
) -> Iterator[Dict[str, Any]]:
    """Yield ``{station_id, public, status, measurements}`` per station."""
    for station_id in station_ids:
        yield {
            "station_id": station_id,
            **{name: get_kv_table(station_id, name, at=at) for name in KV_TABLES},
        }


# ============================================================================
# USER / SESSION OPERATIONS
# ============================================================================

def insert_user(email: str, password_hash: str) -> int:
    with get_connection() as conn:
        cursor = conn.execute(
            "INSERT INTO users (email, password_hash) VALUES (?, ?)",
            (email.strip().lower(), password_hash),
        )
        return cursor.lastrowid


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
        ).fetchone()
        return dict(row) if row else None


def get_user_by_id(user_id: int) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None


def insert_session(token: str, user_id: int, expires_at: datetime) -> None:
    with get_connection() as conn:
        conn.execute(
            "INSERT INTO sessions (token, user_id, expires_at) VALUES (?, ?, ?)",
            (token, user_id, expires_at.isoformat(timespec="seconds")),
        )


def get_session(token: str) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM sessions WHERE token = ?", (token,)).fetchone()
        return dict(row) if row else None


def delete_session(token: str) -> None:
    with get_connection() as conn:
        conn.execute("DELETE FROM sessions WHERE token = ?", (token,))


def purge_expired_sessions(now: Optional[datetime] = None) -> int:
    cutoff = (now or datetime.now()).isoformat(timespec="seconds")
    with get_connection() as conn:
        cursor = conn.execute("DELETE FROM sessions WHERE expires_at < ?", (cutoff,))
        return cursor.rowcount


# ============================================================================
# PREFERENCE OPERATIONS
# ============================================================================

def get_preference(key: str) -> Optional[str]:
    with get_connection() as conn:
        row = conn.execute("SELECT value FROM preferences WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None


def set_preference(key: str, value: str) -> None:
    with get_connection() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO preferences (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, datetime.now().isoformat(timespec="seconds")),
        )


def delete_preference(key: str) -> None:
    with get_connection() as conn:
        conn.execute("DELETE FROM preferences WHERE key = ?", (key,))
