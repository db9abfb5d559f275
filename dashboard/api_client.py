"""
Async client for the station monitor REST API, used by the dashboard pages.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from config import KV_TABLES, SESSION_COOKIE_NAME

logger = logging.getLogger("api_client")

PERIODS = ("24h", "7d")


class ApiError(Exception):
    """Network failure or non-2xx response from the API."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def _check_period(period: str) -> str:
    if period not in PERIODS:
        raise ValueError(f"Unknown period: {period}")
    return period


def _unwrap(payload: Any) -> Any:
    """Strip the ``{success, data}`` envelope used by the overview routes."""
    if isinstance(payload, dict) and "success" in payload:
        if not payload.get("success"):
            raise ApiError(payload.get("error") or "Request failed", payload=payload)
        return payload.get("data")
    return payload


class StationApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        cookies = {SESSION_COOKIE_NAME: self.token} if self.token else None
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            follow_redirects=True,
            cookies=cookies,
            transport=self.transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("API %s %s failed: %s", method, path, e)
            raise ApiError(f"Network error: {e}") from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            message = response.text
            if isinstance(payload, dict):
                message = payload.get("error") or payload.get("message") or message
            raise ApiError(message or f"HTTP {response.status_code}", response.status_code, payload)
        return response

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._request("GET", path, params=params)
        return response.json()

    # ------------------------------------------------------------------
    # Stations
    # ------------------------------------------------------------------

    async def get_stations(self) -> List[Dict[str, Any]]:
        return await self._get("/stations")

    async def get_station(self, station_id: int) -> Dict[str, Any]:
        return await self._get(f"/stations/{station_id}")

    async def get_field_names(self) -> List[Dict[str, Any]]:
        return await self._get("/stations/get-names")

    async def get_station_status(self) -> List[Dict[str, Any]]:
        return await self._get("/stations/station-status")

    async def get_station_overview(self) -> List[Dict[str, Any]]:
        return _unwrap(await self._get("/stations/station-overview"))

    async def get_hourly_average_fetch_health(self, period: str = "24h") -> List[Dict[str, Any]]:
        suffix = "-7d" if _check_period(period) == "7d" else ""
        return _unwrap(await self._get(f"/stations/hourly-average-fetch-health{suffix}"))

    async def get_average_status(self) -> List[Dict[str, Any]]:
        return await self._get("/stations/average-status")

    async def get_advanced_table(self, at: Optional[datetime] = None) -> Dict[str, Any]:
        if at is None:
            return await self._get("/stations/advanced-table")
        return await self._get("/stations/advanced-table-datetime", {"datetime": at.isoformat()})

    async def get_kv_table(
        self,
        table_name: str,
        station_id: int,
        at: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        if table_name not in KV_TABLES:
            raise ValueError(f"Unknown key/value table: {table_name}")
        if at is None:
            return await self._get(f"/stations/{table_name}-table/{station_id}")
        return await self._get(
            f"/stations/{table_name}-table-datetime/{station_id}",
            {"datetime": at.isoformat()},
        )

    # ------------------------------------------------------------------
    # Overview
    # ------------------------------------------------------------------

    async def get_overview_data(self, period: str = "24h") -> List[Dict[str, Any]]:
        return _unwrap(await self._get(f"/overview-data-{_check_period(period)}"))

    async def get_online_data(self, period: str = "24h") -> List[Dict[str, Any]]:
        return _unwrap(await self._get(f"/online-data-{_check_period(period)}"))

    async def get_response_times(self) -> List[Dict[str, Any]]:
        return _unwrap(await self._get("/response-times"))

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> str:
        """Log in and return the session token (also kept on the client)."""
        response = await self._request("POST", "/users/login", json={"email": email, "password": password})
        token = response.cookies.get(SESSION_COOKIE_NAME)
        if not token:
            raise ApiError("Login response did not include a session token", response.status_code)
        self.token = token
        return token

    async def logout(self) -> None:
        await self._request("POST", "/users/logout")
        self.token = None

    async def me(self) -> Optional[Dict[str, Any]]:
        """Current user, or None when the session is missing or invalid."""
        try:
            payload = await self._get("/users/me")
        except ApiError as e:
            if e.status_code == 401:
                return None
            raise
        return payload.get("user")
