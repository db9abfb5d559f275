"""
Station Monitor - Configuration
Central configuration for the telemetry API, dashboard and refresh schedule.
"""

from dataclasses import dataclass, replace
from typing import Optional, Tuple
import os

# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

DATABASE_PATH = "station_monitor.db"

# Key/value snapshot tables per station
KV_TABLES = ("public", "status", "measurements")

# Datetime lookups read the snapshot one hour before the requested time
# (collector timestamps are stored one hour ahead of UTC)
KV_DATETIME_SHIFT_HOURS = 1

# ============================================================================
# SCHEDULER CONFIGURATION
# ============================================================================

# Advanced table refresh runs on the 9th minute of every 10-minute cycle (UTC)
REFRESH_MINUTES: Tuple[int, ...] = (9, 19, 29, 39, 49, 59)

# Delay before the first fetch after startup (seconds)
INITIAL_FETCH_DELAY_S = 2.0

# Rolling window for fetch duration average
FETCH_TIME_WINDOW = 10

# Client-side auto-refresh (seconds)
DASHBOARD_REFRESH_INTERVAL_S = 10 * 60

# Cache headers for the advanced table
ADVANCED_TABLE_MAX_AGE_S = 300
ADVANCED_TABLE_RETRY_AFTER_S = 30

# ============================================================================
# AUTH CONFIGURATION
# ============================================================================

SESSION_COOKIE_NAME = "supabase-token"
SESSION_TTL_SECONDS = 60 * 60

PASSWORD_HASH_ITERATIONS = 200_000

# Dashboard paths that require a validated session
PROTECTED_ROUTES = ("/overview", "/advanced", "/station", "/report")
HOME_ROUTE = "/overview"
LOGIN_ROUTE = "/login"

# ============================================================================
# ADVANCED TABLE / COLUMN CONFIGURATION
# ============================================================================

TABLE_STATE_KEY = "advanced-table-state"

# Pinned columns (always shown, not part of any toggle group)
PINNED_COLUMNS = ("label_id", "label_name", "label_type")

# Station group, in display order
STATION_COLUMNS = (
    "label", "latitude", "longitude", "altitude",
    "ip_address", "sms_number", "online_24h_avg", "online_7d_avg", "online_24h_graph",
    "online_last_seen", "data_health_24h_avg", "data_health_7d_avg",
)

DEFAULT_SELECTED_COLUMNS = (
    "label", "ip_address", "online_24h_avg", "data_health_24h_avg",
    "latitude", "longitude", "altitude", "sms_number",
)

# Column id -> (header label, row field)
STATION_COLUMN_CATALOG = {
    "label_id": ("ID", "label_id"),
    "label_name": ("Name", "label_name"),
    "label_type": ("Type", "label_type"),
    "label": ("Label", "label"),
    "latitude": ("Latitude", "latitude"),
    "longitude": ("Longitude", "longitude"),
    "altitude": ("Altitude", "altitude"),
    "ip_address": ("IP Address", "ip"),
    "sms_number": ("SMS Number", "sms_number"),
    "online_24h_avg": ("Online_24h_Avg", "avg_fetch_health_24h"),
    "online_7d_avg": ("Online_7d_Avg", "avg_fetch_health_7d"),
    "online_24h_graph": ("Online_24h_Graph", "hourly_status"),
    "online_last_seen": ("Online_Last_Seen", "last_updated"),
    "data_health_24h_avg": ("Data_Health_24h_Avg", "avg_data_health_24h"),
    "data_health_7d_avg": ("Data_Health_7d_Avg", "avg_data_health_7d"),
    "public_timestamp": ("Public: Timestamp", "public_timestamp"),
    "status_timestamp": ("Status: Timestamp", "status_timestamp"),
    "measurements_timestamp": ("Measurements: Timestamp", "measurements_timestamp"),
}

# Search scans these scalar fields plus every nested data map
SEARCH_BASIC_FIELDS = ("label_name", "label_type", "label", "ip", "sms_number", "label_id")
SEARCH_NESTED_FIELDS = ("public_data", "status_data", "measurements_data")

# ============================================================================
# RUNTIME SETTINGS
# ============================================================================


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, read once from the environment at startup."""
    database_path: str = DATABASE_PATH
    api_base_url: str = "http://localhost:8000/api"
    enable_auth_middleware: bool = False
    log_level: str = "INFO"
    log_file: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000
    table_state_path: Optional[str] = None
    scheduler_enabled: bool = True
    # False when api_base_url is the built-in default rather than API_BASE_URL
    api_base_url_configured: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_path=os.getenv("STATION_MONITOR_DB", DATABASE_PATH),
            api_base_url=os.getenv("API_BASE_URL", "http://localhost:8000/api").rstrip("/"),
            api_base_url_configured=bool(os.getenv("API_BASE_URL")),
            enable_auth_middleware=_env_bool("ENABLE_AUTH_MIDDLEWARE", False),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            table_state_path=os.getenv("TABLE_STATE_PATH") or None,
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
        )

    def bound_to(self, host: Optional[str] = None, port: Optional[int] = None) -> "Settings":
        """Settings for serving on host/port; an unconfigured API URL follows the port."""
        updated = replace(self, host=host or self.host, port=port or self.port)
        if not self.api_base_url_configured:
            updated = replace(updated, api_base_url=f"http://127.0.0.1:{updated.port}/api")
        return updated
