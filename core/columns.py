"""
Column catalogue and three-state group selection for the advanced table.

Columns come in two kinds: fixed station fields (configured in ``config``) and
dynamic keys reported by the server per data category. Groups bundle them so a
whole category can be shown or hidden at once; the group checkbox reflects
whether all, some or none of its columns are selected.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from config import (
    DEFAULT_SELECTED_COLUMNS,
    PINNED_COLUMNS,
    STATION_COLUMNS,
    STATION_COLUMN_CATALOG,
)

from .models import (
    CATEGORY_LABELS,
    CATEGORY_TIMESTAMP_COLUMNS,
    DATA_CATEGORIES,
    ColumnCategory,
    ColumnId,
)

logger = logging.getLogger("columns")


class UnknownColumnError(KeyError):
    """Raised for a column or group id outside the known catalogue."""


class GroupState(str, Enum):
    ALL = "all"
    SOME = "some"
    NONE = "none"


# Group name -> data category (the station group has none)
GROUP_CATEGORIES: Dict[str, Optional[ColumnCategory]] = {
    "station": None,
    "public-data": ColumnCategory.PUBLIC_DATA,
    "status-data": ColumnCategory.STATUS_DATA,
    "measurements": ColumnCategory.MEASUREMENTS,
}

GROUP_LABELS = {
    "station": "Station",
    "public-data": "Public Data",
    "status-data": "Status Data",
    "measurements": "Measurements",
}


@dataclass(frozen=True)
class ColumnGroup:
    name: str
    label: str
    column_ids: Tuple[str, ...]

    def __contains__(self, column_id: str) -> bool:
        return column_id in self.column_ids


class ColumnCatalog:
    """Known columns: the static station set plus server-reported keys per category."""

    def __init__(self, keys: Optional[Mapping[ColumnCategory, Iterable[str]]] = None):
        keys = keys or {}
        self._keys: Dict[ColumnCategory, Tuple[str, ...]] = {
            category: tuple(dict.fromkeys(keys.get(category, ()))) for category in DATA_CATEGORIES
        }

    @classmethod
    def from_column_structure(cls, structure: Optional[Mapping[str, Mapping[str, str]]]) -> "ColumnCatalog":
        """Build from the ``columnStructure`` block of the advanced table payload."""
        structure = structure or {}
        return cls({
            category: list((structure.get(category.value) or {}).keys())
            for category in DATA_CATEGORIES
        })

    def keys(self, category: ColumnCategory) -> Tuple[str, ...]:
        return self._keys.get(category, ())

    def group(self, name: str) -> ColumnGroup:
        if name not in GROUP_CATEGORIES:
            raise UnknownColumnError(name)
        category = GROUP_CATEGORIES[name]
        if category is None:
            ids = tuple(STATION_COLUMNS)
        else:
            data_keys = self.keys(category)
            # An unloaded category has nothing to toggle, not even its timestamp
            if not data_keys:
                ids = ()
            else:
                ids = (CATEGORY_TIMESTAMP_COLUMNS[category],) + tuple(
                    ColumnId(category, key).display_id for key in data_keys
                )
        return ColumnGroup(name=name, label=GROUP_LABELS[name], column_ids=ids)

    def groups(self) -> List[ColumnGroup]:
        return [self.group(name) for name in GROUP_CATEGORIES]

    def all_column_ids(self) -> List[str]:
        """Every toggleable column id, in display order."""
        ids: List[str] = []
        for group in self.groups():
            ids.extend(group.column_ids)
        return ids

    def is_known(self, column_id: str) -> bool:
        return column_id in set(self.all_column_ids())

    def header(self, column_id: str) -> str:
        if column_id in STATION_COLUMN_CATALOG:
            return STATION_COLUMN_CATALOG[column_id][0]
        column = ColumnId.parse(column_id)
        if column.category is ColumnCategory.STATION:
            return column_id
        return f"{CATEGORY_LABELS[column.category]}: {column.key}"

    def field(self, column_id: str) -> str:
        """Row field path for a column id (dotted for nested data)."""
        if column_id in STATION_COLUMN_CATALOG:
            return STATION_COLUMN_CATALOG[column_id][1]
        return ColumnId.parse(column_id).display_id


class ColumnSelection:
    """
    Mutable set of visible column ids.

    Every change is reported to ``on_change`` so it can be persisted. An empty
    selection is never reported: it means "not initialised yet" and must not
    overwrite a previously saved selection.
    """

    def __init__(
        self,
        catalog: ColumnCatalog,
        selected: Optional[Iterable[str]] = None,
        on_change: Optional[Callable[[List[str]], None]] = None,
    ):
        self.catalog = catalog
        self._on_change = on_change
        known = set(catalog.all_column_ids())
        initial = list(selected) if selected else list(DEFAULT_SELECTED_COLUMNS)
        self._selected: Set[str] = {c for c in initial if c in known}
        dropped = [c for c in initial if c not in known]
        if dropped:
            logger.debug("Ignoring %d unknown column id(s): %s", len(dropped), dropped[:5])

    @property
    def selected(self) -> frozenset:
        return frozenset(self._selected)

    def is_selected(self, column_id: str) -> bool:
        return column_id in self._selected

    def group_state(self, name: str) -> GroupState:
        group = self.catalog.group(name)
        if not group.column_ids:
            return GroupState.NONE
        count = sum(1 for c in group.column_ids if c in self._selected)
        if count == 0:
            return GroupState.NONE
        if count == len(group.column_ids):
            return GroupState.ALL
        return GroupState.SOME

    def toggle_group(self, name: str, visible: bool) -> None:
        group = self.catalog.group(name)
        updated = set(self._selected)
        if visible:
            updated.update(group.column_ids)
        else:
            updated.difference_update(group.column_ids)
        self._commit(updated)

    def toggle_column(self, column_id: str, visible: bool) -> None:
        if not self.catalog.is_known(column_id):
            raise UnknownColumnError(column_id)
        updated = set(self._selected)
        if visible:
            updated.add(column_id)
        else:
            updated.discard(column_id)
        self._commit(updated)

    def show_all(self) -> None:
        self._commit(set(self.catalog.all_column_ids()))

    def hide_all(self) -> None:
        self._commit(set())

    def reset_to_default(self) -> None:
        known = set(self.catalog.all_column_ids())
        self._commit({c for c in DEFAULT_SELECTED_COLUMNS if c in known})

    def ordered(self) -> List[str]:
        """Selected ids in catalogue display order."""
        return [c for c in self.catalog.all_column_ids() if c in self._selected]

    def visible_columns(self) -> List[str]:
        """Pinned columns followed by the selection, in display order."""
        return list(PINNED_COLUMNS) + self.ordered()

    def _commit(self, updated: Set[str]) -> None:
        self._selected = updated
        if not updated or self._on_change is None:
            return
        self._on_change(self.ordered())


def group_states(selection: ColumnSelection) -> Dict[str, GroupState]:
    return {name: selection.group_state(name) for name in GROUP_CATEGORIES}

