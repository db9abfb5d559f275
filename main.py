# Station Monitor - Command line entry point
# Database setup, demo data, user management and the API/dashboard server.

# Load environment variables FIRST (before any other imports)
from dotenv import load_dotenv
load_dotenv()

import argparse
import json
import logging
import random
import sys
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

import database
from config import Settings
from core.log_setup import LogSettings, configure_logging

logger = logging.getLogger("main")

DEMO_STATIONS = [
    {"label": "Cluj-Napoca", "label_id": "CJ01", "label_name": "Cluj Centru", "label_type": "AWS",
     "latitude": 46.7712, "longitude": 23.6236, "altitude": 360, "ip": "10.0.0.11", "sms_number": "+40700000011"},
    {"label": "Brasov", "label_id": "BV01", "label_name": "Brasov Tampa", "label_type": "AWS",
     "latitude": 45.6427, "longitude": 25.5887, "altitude": 580, "ip": "10.0.0.12", "sms_number": "+40700000012"},
    {"label": "Constanta", "label_id": "CT01", "label_name": "Constanta Port", "label_type": "Coastal",
     "latitude": 44.1598, "longitude": 28.6348, "altitude": 12, "ip": "10.0.0.13", "sms_number": "+40700000013"},
    {"label": "Sibiu", "label_id": "SB01", "label_name": "Sibiu Aeroport", "label_type": "Rain",
     "latitude": 45.7983, "longitude": 24.0914, "altitude": 443, "ip": "10.0.0.14", "sms_number": None},
]

DEMO_FIELD_NAMES = ["Batt", "PTemp", "AirTC", "RH", "Rain_mm", "WS_ms"]


def seed_demo_data(now: Optional[datetime] = None, seed: int = 7, hours: int = 168) -> List[int]:
    """Insert demo stations with a week of hourly health and recent key/value snapshots."""
    rng = random.Random(seed)
    now = (now or datetime.now()).replace(minute=0, second=0, microsecond=0)

    with database.get_connection() as conn:
        if conn.execute("SELECT COUNT(*) FROM field_names").fetchone()[0] == 0:
            conn.executemany("INSERT INTO field_names (name) VALUES (?)", [(n,) for n in DEMO_FIELD_NAMES])

    station_ids = []
    for station in DEMO_STATIONS:
        station_id = database.insert_station(station)
        station_ids.append(station_id)
        reliability = rng.uniform(0.6, 0.98)

        for offset in range(hours, -1, -1):
            bucket = (now - timedelta(hours=offset)).strftime(database.BUCKET_FORMAT)
            online = rng.random() < reliability
            fetch_health = round(rng.uniform(70, 100), 1) if online else 0.0
            data_health = round(rng.uniform(50, 100), 1) if online else None
            database.upsert_hourly_health(station_id, bucket, online, fetch_health, data_health)

        for offset in range(0, 24, 2):
            moment = now - timedelta(hours=offset)
            database.insert_collector_response(
                station_id,
                moment.isoformat(timespec="seconds"),
                200 if rng.random() < reliability else 504,
                round(rng.uniform(120, 900), 1),
                rng.randint(800, 2400),
            )

        for back in (2, 1, 0):
            # Collector timestamps run one hour ahead
            stamp = (now - timedelta(hours=back) + timedelta(hours=1)).isoformat(timespec="seconds")
            database.insert_kv_snapshot(station_id, "public", {
                "Batt": round(rng.uniform(12.0, 13.8), 2),
                "PTemp": round(rng.uniform(5, 30), 1),
                "AirTC": round(rng.uniform(-5, 30), 1),
            }, stamp)
            database.insert_kv_snapshot(station_id, "status", {
                "OSVersion": "CR1000X.Std.06",
                "WatchdogErrors": rng.randint(0, 2),
                "LithiumBattery": round(rng.uniform(3.0, 3.6), 2),
            }, stamp)
            database.insert_kv_snapshot(station_id, "measurements", {
                "RH": round(rng.uniform(30, 100), 1),
                "Rain_mm": round(rng.uniform(0, 5), 2),
                "WS_ms": round(rng.uniform(0, 15), 1),
            }, stamp)

    logger.info("Seeded %d demo station(s)", len(station_ids))
    return station_ids


def _cmd_init_db(args, settings: Settings) -> int:
    database.init_database()
    print(f"✓ Database initialized: {settings.database_path}")
    return 0


def _cmd_seed_demo(args, settings: Settings) -> int:
    database.init_database()
    ids = seed_demo_data(seed=args.seed, hours=args.hours)
    print(f"✓ Seeded {len(ids)} demo stations ({args.hours}h of hourly health)")
    return 0


def _cmd_create_user(args, settings: Settings) -> int:
    from core.auth import AuthError, create_user
    database.init_database()
    try:
        user = create_user(args.email, args.password)
    except AuthError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    print(f"✓ Created user {user.email} (id={user.id})")
    return 0


def _cmd_refresh(args, settings: Settings) -> int:
    """Build the advanced table once and print a summary (or the full payload)."""
    from core.advanced_table import fetch_advanced_station_data
    database.init_database()
    at = datetime.fromisoformat(args.at) if args.at else None
    payload = fetch_advanced_station_data(at=at)
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
        return 0
    meta = payload["metadata"]
    print(f"  Stations:         {meta['totalStations']}")
    print(f"  Public keys:      {len(meta['publicKeys'])}")
    print(f"  Status keys:      {len(meta['statusKeys'])}")
    print(f"  Measurement keys: {len(meta['measurementKeys'])}")
    print(f"  Generated at:     {meta['generatedAt']}")
    return 0


def _cmd_serve(args, settings: Settings) -> int:
    import uvicorn
    from web_server import create_app
    settings = settings.bound_to(args.host, args.port)
    app = create_app(settings)
    logger.info("Dashboard API base URL: %s", settings.api_base_url)
    uvicorn.run(app, host=settings.host, port=settings.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Station Monitor - telemetry API and dashboard")
    parser.add_argument("--db", type=str, help="SQLite database path (overrides STATION_MONITOR_DB)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create or migrate the database schema")
    p.set_defaults(func=_cmd_init_db)

    p = sub.add_parser("seed-demo", help="Insert demo stations and telemetry")
    p.add_argument("--seed", type=int, default=7)
    p.add_argument("--hours", type=int, default=168)
    p.set_defaults(func=_cmd_seed_demo)

    p = sub.add_parser("create-user", help="Create a dashboard login")
    p.add_argument("email")
    p.add_argument("password")
    p.set_defaults(func=_cmd_create_user)

    p = sub.add_parser("refresh", help="Build the advanced station table once")
    p.add_argument("--at", type=str, help="ISO datetime for historical snapshots")
    p.add_argument("--json", action="store_true", help="Print the full payload")
    p.set_defaults(func=_cmd_refresh)

    p = sub.add_parser("serve", help="Run the API and dashboard")
    p.add_argument("--host", type=str)
    p.add_argument("--port", type=int)
    p.set_defaults(func=_cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    if args.db:
        settings = replace(settings, database_path=args.db)

    configure_logging(LogSettings.from_settings(settings))
    database.configure(settings.database_path)
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
