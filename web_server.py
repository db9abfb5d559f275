# Load environment variables FIRST (before any other imports)
from dotenv import load_dotenv
load_dotenv()

import logging
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

# Silence verbose loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logger = logging.getLogger("web_server")

import database
from config import (
    ADVANCED_TABLE_MAX_AGE_S,
    ADVANCED_TABLE_RETRY_AFTER_S,
    SESSION_COOKIE_NAME,
    SESSION_TTL_SECONDS,
    Settings,
)
from database import StorageError
from core.advanced_table import fetch_advanced_station_data
from core.auth import AuthError, authenticate, logout as end_session, user_for_token
from core.cache import AdvancedStationDataCache
from core.scheduler import AdvancedDataScheduler
from dashboard.routes import dashboard_auth_middleware, router as dashboard_router


class LoginRequest(BaseModel):
    email: str
    password: str


class RequestError(Exception):
    """Client error mapped to a 4xx ``{error}`` body."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


api = APIRouter(prefix="/api")


# ============================================================================
# REQUEST HELPERS
# ============================================================================

def _parse_station_id(raw: str) -> int:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        raise RequestError("Invalid station ID") from None


def _parse_datetime(raw: Optional[str]) -> datetime:
    if not raw:
        raise RequestError("Datetime parameter is required")
    try:
        return datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        raise RequestError("Invalid datetime format. Expected ISO string.") from None


def _envelope(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _envelope_error(message: str) -> JSONResponse:
    return JSONResponse(status_code=500, content={"success": False, "error": message})


def _require_session(request: Request):
    if request.app.state.settings.enable_auth_middleware:
        return user_for_token(request.cookies.get(SESSION_COOKIE_NAME))
    return None


# ============================================================================
# STATIONS
# ============================================================================

@api.get("/stations")
def list_stations():
    return database.fetch_stations()


@api.get("/stations/get-names")
def get_field_names():
    return database.fetch_field_names()


@api.get("/stations/station-status")
def station_status():
    return database.get_station_hourly_health()


@api.get("/stations/station-overview")
def station_overview():
    try:
        return _envelope(database.get_station_overview())
    except Exception as e:
        logger.error("Error fetching station overview: %s", e)
        return _envelope_error("Failed to fetch station overview data")


@api.get("/stations/hourly-average-fetch-health")
def hourly_average_fetch_health():
    try:
        return _envelope(database.get_hourly_avg_fetch_health("24h"))
    except Exception as e:
        logger.error("Error fetching hourly average fetch health: %s", e)
        return _envelope_error("Failed to fetch hourly average fetch health")


@api.get("/stations/hourly-average-fetch-health-7d")
def hourly_average_fetch_health_7d():
    try:
        return _envelope(database.get_hourly_avg_fetch_health("7d"))
    except Exception as e:
        logger.error("Error fetching 7d hourly average fetch health: %s", e)
        return _envelope_error("Failed to fetch 7d hourly average fetch health")


@api.get("/stations/average-status")
def average_status():
    return database.get_average_status()


@api.get("/stations/advanced-table")
def advanced_table(request: Request):
    """Serve the scheduler-built payload; never builds it on demand."""
    cache: AdvancedStationDataCache = request.app.state.cache
    data = cache.get_data()
    if data is None:
        logger.warning("Advanced station data cache miss - data is being fetched in background")
        return JSONResponse(
            status_code=503,
            content={
                "error": "Data not available yet",
                "message": "Advanced station data is being fetched. Please try again in a few moments.",
                "retry_after": ADVANCED_TABLE_RETRY_AFTER_S,
                "cache_status": cache.status(),
            },
        )
    return JSONResponse(
        content=data,
        headers={
            "Cache-Control": f"public, max-age={ADVANCED_TABLE_MAX_AGE_S}",
            "ETag": f'"advanced-data-{int(time.time() * 1000)}"',
        },
    )


@api.get("/stations/advanced-table-datetime")
def advanced_table_datetime(at: Optional[str] = Query(None, alias="datetime")):
    return fetch_advanced_station_data(at=_parse_datetime(at))


def _kv_table(station_id: str, table_name: str, at_raw: Optional[str] = None, historical: bool = False):
    sid = _parse_station_id(station_id)
    at = _parse_datetime(at_raw) if historical else None
    try:
        return database.get_kv_table(sid, table_name, at=at)
    except StorageError as e:
        logger.error("Error fetching %s table for station %s: %s", table_name, sid, e)
        return []


@api.get("/stations/public-table/{station_id}")
def public_table(station_id: str):
    return _kv_table(station_id, "public")


@api.get("/stations/status-table/{station_id}")
def status_table(station_id: str):
    return _kv_table(station_id, "status")


@api.get("/stations/measurements-table/{station_id}")
def measurements_table(station_id: str):
    return _kv_table(station_id, "measurements")


@api.get("/stations/public-table-datetime/{station_id}")
def public_table_datetime(station_id: str, at: Optional[str] = Query(None, alias="datetime")):
    return _kv_table(station_id, "public", at, historical=True)


@api.get("/stations/status-table-datetime/{station_id}")
def status_table_datetime(station_id: str, at: Optional[str] = Query(None, alias="datetime")):
    return _kv_table(station_id, "status", at, historical=True)


@api.get("/stations/measurements-table-datetime/{station_id}")
def measurements_table_datetime(station_id: str, at: Optional[str] = Query(None, alias="datetime")):
    return _kv_table(station_id, "measurements", at, historical=True)


@api.get("/stations/{station_id}")
def get_station(station_id: str):
    station = database.fetch_station_by_id(_parse_station_id(station_id))
    if station is None:
        return JSONResponse(status_code=404, content={"error": "Not found"})
    return station


# ============================================================================
# OVERVIEW
# ============================================================================

@api.get("/overview-data-24h")
def overview_data_24h():
    try:
        return _envelope(database.get_overview_data("24h"))
    except Exception as e:
        logger.error("Error fetching 24h overview data: %s", e)
        return _envelope_error("Failed to fetch overview data")


@api.get("/overview-data-7d")
def overview_data_7d():
    try:
        return _envelope(database.get_overview_data("7d"))
    except Exception as e:
        logger.error("Error fetching 7d overview data: %s", e)
        return _envelope_error("Failed to fetch overview data")


@api.get("/online-data-24h")
def online_data_24h():
    try:
        return _envelope(database.get_online_data("24h"))
    except Exception as e:
        logger.error("Error fetching 24h online data: %s", e)
        return _envelope_error("Failed to fetch online data")


@api.get("/online-data-7d")
def online_data_7d():
    try:
        return _envelope(database.get_online_data("7d"))
    except Exception as e:
        logger.error("Error fetching 7d online data: %s", e)
        return _envelope_error("Failed to fetch online data")


@api.get("/response-times")
def response_times():
    try:
        return _envelope(database.get_response_times())
    except Exception as e:
        logger.error("Error fetching response times: %s", e)
        return _envelope_error("Failed to fetch response times")


# ============================================================================
# USERS
# ============================================================================

@api.post("/users/login")
def login(payload: LoginRequest):
    session = authenticate(payload.email, payload.password)
    response = JSONResponse(content={"message": "Logged in"})
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=session.token,
        max_age=SESSION_TTL_SECONDS,
        httponly=True,
        secure=False,
        samesite="lax",
        path="/",
    )
    return response


@api.post("/users/logout")
def logout(request: Request):
    _require_session(request)
    end_session(request.cookies.get(SESSION_COOKIE_NAME))
    response = JSONResponse(content={"message": "Logged out"})
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


@api.get("/users/me")
def current_user(request: Request):
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return JSONResponse(status_code=401, content={"user": None})
    return {"user": user_for_token(token).to_dict()}


# ============================================================================
# APP FACTORY
# ============================================================================

def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestError)
    async def request_error_handler(request: Request, exc: RequestError):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return JSONResponse(status_code=401, content={"error": str(exc), "user": None})

    @app.exception_handler(StorageError)
    @app.exception_handler(sqlite3.Error)
    async def storage_error_handler(request: Request, exc: Exception):
        logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    database.configure(settings.database_path)

    app = FastAPI(title="Station Monitor")
    app.state.settings = settings
    app.state.cache = AdvancedStationDataCache()
    app.state.scheduler = AdvancedDataScheduler(app.state.cache, fetch_advanced_station_data)
    # Dashboard -> API calls go over HTTP unless a transport is injected
    app.state.api_transport = None

    _register_error_handlers(app)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        started = time.monotonic()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        if response.status_code >= 500:
            logger.error(
                "%s %s -> %d (%.0fms) [%s]",
                request.method, request.url.path, response.status_code,
                (time.monotonic() - started) * 1000.0, request_id,
            )
        return response

    app.middleware("http")(dashboard_auth_middleware)

    app.include_router(api)
    app.include_router(dashboard_router)

    @app.get("/health")
    def health():
        return {
            "status": "Backend running",
            "time": datetime.now(timezone.utc).isoformat(),
            "scheduler": app.state.scheduler.status(),
        }

    @app.on_event("startup")
    async def startup_event():
        """Initialise storage and start the advanced table refresh loop."""
        database.init_database()
        if settings.scheduler_enabled:
            app.state.scheduler.start()
            logger.info("Advanced data caching enabled - /api/stations/advanced-table serves cached data only")

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.scheduler.stop()

    return app


app = create_app(Settings.from_env().bound_to())


if __name__ == "__main__":
    import uvicorn
    from core.log_setup import LogSettings, configure_logging
    configure_logging(LogSettings.from_settings(app.state.settings))
    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port)
