"""
View models behind the dashboard pages.

Each view owns its loading/error flags and the data it renders. Refreshes are
tagged with a RefreshGuard generation so a slow response that lands after a
newer refresh started is dropped instead of overwriting fresher data.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from config import KV_TABLES
from core.aggregation import process_health_data, process_online_data, summarize_online
from core.columns import ColumnCatalog, ColumnSelection, GroupState, group_states
from core.export import (
    XLSX_MEDIA_TYPE,
    export_filename,
    export_rows_csv,
    export_rows_xlsx,
)
from core.models import HealthPoint, OnlinePoint
from core.persistence import TableStatePersistence
from core.search import filter_rows

from .api_client import ApiError, StationApiClient

logger = logging.getLogger("dashboard")

HEALTH_METRICS = ("average", "min", "max")


class RefreshGuard:
    """Monotonic generation counter; only the newest refresh may publish."""

    def __init__(self):
        self._generation = 0
        self._lock = threading.Lock()

    def begin(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    @property
    def generation(self) -> int:
        return self._generation


# ============================================================================
# OVERVIEW
# ============================================================================

@dataclass
class OverviewView:
    client: StationApiClient
    period: str = "24h"
    loading: bool = False
    error: Optional[str] = None
    rows: List[Dict[str, Any]] = field(default_factory=list)
    online_points: List[OnlinePoint] = field(default_factory=list)
    health_points: List[HealthPoint] = field(default_factory=list)
    health_metrics: set = field(default_factory=lambda: {"average"})
    guard: RefreshGuard = field(default_factory=RefreshGuard)

    def _reset(self) -> None:
        self.rows = []
        self.online_points = []
        self.health_points = []

    async def refresh(self, period: Optional[str] = None) -> bool:
        """Reload overview rows and chart data. Returns False if nothing was published."""
        if period is not None:
            self.period = period
        generation = self.guard.begin()
        self.loading = True
        self.error = None
        try:
            overview, online = await asyncio.gather(
                self.client.get_overview_data(self.period),
                self.client.get_online_data(self.period),
            )
        except ApiError as e:
            if not self.guard.is_current(generation):
                return False
            logger.error("Error fetching overview data (%s): %s", self.period, e)
            self._reset()
            self.error = "Failed to load overview data"
            self.loading = False
            return False

        if not self.guard.is_current(generation):
            logger.debug("Dropping stale overview refresh #%d", generation)
            return False

        self.rows = list(overview or [])
        self.online_points = process_online_data(online or [])
        self.health_points = process_health_data(online or [])
        self.loading = False
        return True

    def toggle_health_metric(self, metric: str) -> None:
        if metric not in HEALTH_METRICS:
            raise ValueError(f"Unknown health metric: {metric}")
        if metric in self.health_metrics:
            # At least one series stays visible
            if len(self.health_metrics) > 1:
                self.health_metrics.discard(metric)
        else:
            self.health_metrics.add(metric)

    def stats(self) -> Dict[str, Any]:
        total = len(self.rows)
        online = sum(1 for r in self.rows if r.get("station_online"))

        def _mean(key: str) -> float:
            if not total:
                return 0.0
            return round(sum(float(r.get(key) or 0) for r in self.rows) / total, 2)

        return {
            "total_stations": total,
            "online_stations": online,
            "offline_stations": total - online,
            "avg_fetch_health": _mean("fetch_health"),
            "avg_data_health": _mean("data_health"),
            "latest": summarize_online(self.online_points),
        }


# ============================================================================
# ADVANCED TABLE
# ============================================================================

class AdvancedTableView:
    """
    Advanced station grid: cached payload, column selection, search and export.

    Selection, search term and expanded group are written through
    ``persistence`` on every change and restored on the first load.
    """

    def __init__(self, client: StationApiClient, persistence: TableStatePersistence):
        self.client = client
        self.persistence = persistence
        self.guard = RefreshGuard()
        self.loading = False
        self.error: Optional[str] = None
        self.payload: Dict[str, Any] = {}
        self.catalog = ColumnCatalog()
        self.search_term = ""
        self.expanded_group = ""
        self.selection = ColumnSelection(self.catalog, on_change=self._persist)

    @property
    def ready(self) -> bool:
        """True once a payload loaded and the saved state was restored over it."""
        return self.error is None and bool(self.payload)

    def _persist(self, ordered: List[str]) -> None:
        # Before a successful load the selection holds defaults, not the saved state
        if not self.ready:
            logger.debug("Advanced table not loaded, not saving table state")
            return
        self.persistence.save_component_state(ordered, self.search_term, self.expanded_group)

    def _restore(self) -> None:
        saved = self.persistence.load_state()
        self.search_term = saved.get("searchTerm") or ""
        self.expanded_group = saved.get("expandedGroup") or ""
        self.selection = ColumnSelection(
            self.catalog,
            saved.get("selectedColumns") or None,
            on_change=self._persist,
        )

    async def refresh(self, at: Optional[datetime] = None) -> bool:
        generation = self.guard.begin()
        self.loading = True
        self.error = None
        try:
            payload = await self.client.get_advanced_table(at=at)
        except ApiError as e:
            if not self.guard.is_current(generation):
                return False
            if e.status_code == 503:
                self.error = "Station data is being prepared, please retry shortly"
            else:
                logger.error("Error fetching advanced table: %s", e)
                self.error = "Failed to load station data"
            self.payload = {}
            self.catalog = ColumnCatalog()
            self.loading = False
            return False

        if not self.guard.is_current(generation):
            logger.debug("Dropping stale advanced table refresh #%d", generation)
            return False

        self.payload = payload or {}
        self.catalog = ColumnCatalog.from_column_structure(self.payload.get("columnStructure"))
        self._restore()
        self.loading = False
        return True

    # -- rows / columns ------------------------------------------------------

    @property
    def stations(self) -> List[Dict[str, Any]]:
        return list(self.payload.get("stations") or [])

    def rows(self) -> List[Dict[str, Any]]:
        return filter_rows(self.stations, self.search_term)

    def columns(self) -> List[Tuple[str, str]]:
        """``(header, field)`` for every visible column, pinned first."""
        return [(self.catalog.header(c), self.catalog.field(c)) for c in self.selection.visible_columns()]

    def group_states(self) -> Dict[str, GroupState]:
        return group_states(self.selection)

    # -- user actions --------------------------------------------------------

    def set_search(self, term: str) -> None:
        self.search_term = term or ""
        self._persist(self.selection.ordered())

    def set_expanded_group(self, name: str) -> None:
        self.expanded_group = "" if name == self.expanded_group else name
        self._persist(self.selection.ordered())

    def toggle_group(self, name: str, visible: bool) -> None:
        self.selection.toggle_group(name, visible)

    def toggle_column(self, column_id: str, visible: bool) -> None:
        self.selection.toggle_column(column_id, visible)

    def save_grid_state(self, column_state=None, filter_model=None, sort_model=None) -> None:
        self.persistence.save_grid_state(column_state, filter_model, sort_model)

    def clear_state(self) -> None:
        self.persistence.clear_state()
        self.search_term = ""
        self.expanded_group = ""
        self.selection = ColumnSelection(self.catalog, on_change=self._persist)

    def export(self, fmt: str, today: Optional[date] = None) -> Tuple[str, str, Any]:
        """Export the rows and columns currently shown. Returns (filename, media type, body)."""
        rows = self.rows()
        columns = self.columns()
        if fmt == "csv":
            return export_filename("csv", today), "text/csv", export_rows_csv(rows, columns)
        if fmt == "xlsx":
            return export_filename("xlsx", today), XLSX_MEDIA_TYPE, export_rows_xlsx(rows, columns)
        raise ValueError(f"Unsupported export format: {fmt}")


# ============================================================================
# STATION / REPORT
# ============================================================================

def default_report_time(now: Optional[datetime] = None) -> datetime:
    """Current time rounded to the nearest 10 minutes."""
    now = (now or datetime.now()).replace(second=0, microsecond=0)
    rounded = int(round(now.minute / 10.0)) * 10
    return now.replace(minute=0) + timedelta(minutes=rounded)


@dataclass
class ReportView:
    """Key/value tables of one station, latest or as of a chosen time."""
    client: StationApiClient
    station: Optional[Dict[str, Any]] = None
    at: Optional[datetime] = None
    tables: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    loading: bool = False
    error: Optional[str] = None
    guard: RefreshGuard = field(default_factory=RefreshGuard)

    async def load(self, station_id: int, at: Optional[datetime] = None) -> bool:
        generation = self.guard.begin()
        self.loading = True
        self.error = None
        self.at = at
        try:
            station, *tables = await asyncio.gather(
                self.client.get_station(station_id),
                *(self.client.get_kv_table(name, station_id, at=at) for name in KV_TABLES),
            )
        except ApiError as e:
            if not self.guard.is_current(generation):
                return False
            logger.error("Error fetching report data for station %s: %s", station_id, e)
            self.station = None
            self.tables = {name: [] for name in KV_TABLES}
            self.error = str(e) if e.status_code in (400, 404) else "Failed to load report data"
            self.loading = False
            return False

        if not self.guard.is_current(generation):
            return False

        self.station = station
        self.tables = dict(zip(KV_TABLES, tables))
        self.loading = False
        return True

    def timestamp(self, table_name: str) -> Optional[str]:
        rows = self.tables.get(table_name) or []
        return rows[0].get("station_timestamp") if rows else None
