"""
Server-rendered dashboard pages (Jinja2) and the login redirect rules.

Pages talk to the REST API through StationApiClient, the same way an external
client would, forwarding the visitor's session cookie.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from config import (
    DASHBOARD_REFRESH_INTERVAL_S,
    HOME_ROUTE,
    LOGIN_ROUTE,
    PROTECTED_ROUTES,
    SESSION_COOKIE_NAME,
    SESSION_TTL_SECONDS,
)
from core.columns import GROUP_LABELS, UnknownColumnError
from core.persistence import DatabaseStateStore, JsonFileStateStore, TableStatePersistence

from .api_client import ApiError, StationApiClient
from .views import AdvancedTableView, OverviewView, ReportView, default_report_time

logger = logging.getLogger("dashboard")

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

router = APIRouter(tags=["dashboard"])


# ============================================================================
# ROUTE PROTECTION
# ============================================================================

@dataclass(frozen=True)
class RouteDecision:
    redirect_to: Optional[str] = None
    clear_cookie: bool = False

    @property
    def allowed(self) -> bool:
        return self.redirect_to is None


def is_protected(path: str) -> bool:
    return any(path.startswith(prefix) for prefix in PROTECTED_ROUTES)


def route_decision(path: str, token: Optional[str], token_valid: Optional[bool] = None) -> RouteDecision:
    """
    Decide whether a dashboard request passes, given the session cookie and
    the outcome of validating it (None when validation could not be done).
    """
    if path in ("/", LOGIN_ROUTE) or not is_protected(path):
        if path == "/":
            return RouteDecision(redirect_to=HOME_ROUTE if token else LOGIN_ROUTE)
        if path == LOGIN_ROUTE and token:
            return RouteDecision(redirect_to=HOME_ROUTE)
        return RouteDecision()

    if not token:
        return RouteDecision(redirect_to=LOGIN_ROUTE)
    if token_valid is False:
        return RouteDecision(redirect_to=LOGIN_ROUTE, clear_cookie=True)
    # Valid, or the API could not be reached: let the page handle it
    return RouteDecision()


def api_client_for(request: Request, token: Optional[str] = None) -> StationApiClient:
    settings = request.app.state.settings
    return StationApiClient(
        settings.api_base_url,
        token=token if token is not None else request.cookies.get(SESSION_COOKIE_NAME),
        transport=getattr(request.app.state, "api_transport", None),
    )


async def dashboard_auth_middleware(request: Request, call_next):
    path = request.url.path
    if path.startswith("/api") or path.startswith("/static"):
        return await call_next(request)

    token = request.cookies.get(SESSION_COOKIE_NAME)
    token_valid: Optional[bool] = None
    if token and is_protected(path):
        try:
            user = await api_client_for(request, token).me()
            token_valid = user is not None
            request.state.user = user
        except ApiError as e:
            if e.status_code is None:
                logger.warning("Unable to validate session, allowing request through: %s", e)
            else:
                token_valid = False

    decision = route_decision(path, token, token_valid)
    if decision.allowed:
        return await call_next(request)

    response = RedirectResponse(decision.redirect_to, status_code=302)
    if decision.clear_cookie:
        response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


# ============================================================================
# HELPERS
# ============================================================================

def _render(request: Request, template_name: str, context: Optional[Dict[str, Any]] = None, status_code: int = 200) -> HTMLResponse:
    payload: Dict[str, Any] = dict(context or {})
    payload.setdefault("user", getattr(request.state, "user", None))
    payload.setdefault("refresh_interval_s", DASHBOARD_REFRESH_INTERVAL_S)
    return templates.TemplateResponse(request, template_name, payload, status_code=status_code)


def _table_persistence(request: Request) -> TableStatePersistence:
    settings = request.app.state.settings
    if settings.table_state_path:
        return TableStatePersistence(JsonFileStateStore(settings.table_state_path))
    user = getattr(request.state, "user", None) or {}
    return TableStatePersistence(DatabaseStateStore(namespace=user.get("email") or ""))


async def _advanced_view(request: Request) -> AdvancedTableView:
    view = AdvancedTableView(api_client_for(request), _table_persistence(request))
    await view.refresh()
    return view


def _back_to_advanced() -> RedirectResponse:
    return RedirectResponse("/advanced", status_code=303)


def _parse_report_time(date_text: Optional[str], time_text: Optional[str]) -> Optional[datetime]:
    if not date_text:
        return None
    try:
        return datetime.fromisoformat(f"{date_text}T{time_text or '00:00'}:00")
    except ValueError:
        return None


# ============================================================================
# LOGIN
# ============================================================================

@router.get("/login", response_class=HTMLResponse)
async def login_page(request: Request):
    return _render(request, "login.html", {"active_page": "login", "error": None})


@router.post("/login")
async def login_submit(request: Request):
    form = await request.form()
    email = str(form.get("email") or "")
    password = str(form.get("password") or "")
    client = api_client_for(request, token="")
    try:
        token = await client.login(email, password)
    except ApiError as e:
        logger.info("Dashboard login failed for %s: %s", email, e)
        return _render(
            request, "login.html",
            {"active_page": "login", "error": str(e) or "Login failed", "email": email},
            status_code=401,
        )

    response = RedirectResponse(HOME_ROUTE, status_code=303)
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        max_age=SESSION_TTL_SECONDS,
        httponly=True,
        samesite="lax",
        path="/",
    )
    return response


@router.post("/logout")
async def logout_submit(request: Request):
    try:
        await api_client_for(request).logout()
    except ApiError as e:
        logger.warning("Logout request failed: %s", e)
    response = RedirectResponse(LOGIN_ROUTE, status_code=303)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


# ============================================================================
# OVERVIEW
# ============================================================================

@router.get("/overview", response_class=HTMLResponse)
async def overview_page(request: Request, period: str = "24h"):
    if period not in ("24h", "7d"):
        period = "24h"
    view = OverviewView(api_client_for(request))
    for metric in request.query_params.getlist("metric"):
        if metric in ("min", "max"):
            view.toggle_health_metric(metric)
    await view.refresh(period)
    return _render(request, "overview.html", {
        "active_page": "overview",
        "view": view,
        "stats": view.stats(),
        "online_points": [p.to_dict() for p in view.online_points],
        "health_points": [p.to_dict() for p in view.health_points],
    })


# ============================================================================
# ADVANCED TABLE
# ============================================================================

@router.get("/advanced", response_class=HTMLResponse)
async def advanced_page(request: Request):
    view = await _advanced_view(request)
    return _render(request, "advanced.html", {
        "active_page": "advanced",
        "view": view,
        "rows": view.rows(),
        "columns": view.columns(),
        "groups": view.catalog.groups(),
        "group_labels": GROUP_LABELS,
        "group_states": view.group_states(),
        "selected": view.selection.selected,
    })


@router.post("/advanced/columns")
async def advanced_columns(request: Request):
    form = await request.form()
    view = await _advanced_view(request)
    if not view.ready:
        logger.warning("Ignoring column change, advanced table not loaded: %s", view.error)
        return _back_to_advanced()
    action = str(form.get("action") or "")
    visible = str(form.get("visible") or "").lower() in ("1", "true", "on", "yes")
    try:
        if action == "show_all":
            view.selection.show_all()
        elif action == "hide_all":
            view.selection.hide_all()
        elif action == "reset":
            view.selection.reset_to_default()
        elif action == "expand":
            view.set_expanded_group(str(form.get("group") or ""))
        elif form.get("group"):
            view.toggle_group(str(form.get("group")), visible)
        elif form.get("column"):
            view.toggle_column(str(form.get("column")), visible)
    except UnknownColumnError as e:
        logger.warning("Ignoring toggle of unknown column: %s", e)
    return _back_to_advanced()


@router.post("/advanced/search")
async def advanced_search(request: Request):
    form = await request.form()
    view = await _advanced_view(request)
    if not view.ready:
        logger.warning("Ignoring search change, advanced table not loaded: %s", view.error)
        return _back_to_advanced()
    view.set_search(str(form.get("search") or ""))
    return _back_to_advanced()


@router.post("/advanced/clear")
async def advanced_clear(request: Request):
    view = await _advanced_view(request)
    if not view.ready:
        logger.warning("Ignoring clear, advanced table not loaded: %s", view.error)
        return _back_to_advanced()
    view.clear_state()
    return _back_to_advanced()


@router.get("/advanced/export")
async def advanced_export(request: Request, format: str = "csv"):
    view = await _advanced_view(request)
    try:
        filename, media_type, body = view.export(format)
    except ValueError as e:
        return Response(str(e), status_code=400, media_type="text/plain")
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# ============================================================================
# STATION / REPORT
# ============================================================================

@router.get("/station/{station_id}", response_class=HTMLResponse)
async def station_page(request: Request, station_id: int):
    view = ReportView(api_client_for(request))
    await view.load(station_id)
    return _render(request, "station.html", {"active_page": "station", "view": view})


@router.get("/report", response_class=HTMLResponse)
async def report_page(
    request: Request,
    station_id: Optional[int] = None,
    date: Optional[str] = None,
    time: Optional[str] = None,
    q: str = "",
):
    client = api_client_for(request)
    default_at = default_report_time()
    at = _parse_report_time(date, time) or default_at

    stations = []
    error = None
    try:
        stations = await client.get_stations()
    except ApiError as e:
        logger.error("Error fetching stations for report: %s", e)
        error = "Failed to load stations"
    if q:
        stations = [s for s in stations if q.lower() in str(s.get("label") or "").lower()]

    view = ReportView(client)
    if station_id is not None:
        await view.load(station_id, at=at)

    return _render(request, "report.html", {
        "active_page": "report",
        "view": view,
        "stations": stations,
        "search": q,
        "selected_date": at.date().isoformat(),
        "selected_time": at.strftime("%H:%M"),
        "error": error or view.error,
    })
