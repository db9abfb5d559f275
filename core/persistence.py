"""
Persisted advanced-table state.

The table state (selected columns, search term, expanded group and grid
column/filter/sort models) is stored as one JSON blob under a fixed key. The
backing store is swappable: in-memory (per session), a JSON file (per
machine) or the server-side preferences table.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import TABLE_STATE_KEY
from database import StorageError

logger = logging.getLogger("table_state")

COMPONENT_KEYS = ("selectedColumns", "searchTerm", "expandedGroup")
GRID_KEYS = ("columnState", "filterModel", "sortModel")


class StateStore(ABC):
    """Minimal string key/value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class MemoryStateStore(StateStore):
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStateStore(StateStore):
    """All keys in one JSON object on disk."""

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return data

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)


class DatabaseStateStore(StateStore):
    """Server-backed preferences (``preferences`` table), optionally namespaced per user."""

    def __init__(self, namespace: str = ""):
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def get(self, key: str) -> Optional[str]:
        from database import get_preference
        return get_preference(self._key(key))

    def set(self, key: str, value: str) -> None:
        from database import set_preference
        set_preference(self._key(key), value)

    def delete(self, key: str) -> None:
        from database import delete_preference
        delete_preference(self._key(key))


class TableStatePersistence:
    """
    Load/merge/save helpers over a StateStore.

    Storage and serialization failures are logged and turned into no-ops; a
    corrupt blob loads as an empty state.
    """

    def __init__(self, store: StateStore, key: str = TABLE_STATE_KEY):
        self.store = store
        self.key = key

    def load_state(self) -> Dict[str, Any]:
        try:
            raw = self.store.get(self.key)
            if not raw:
                return {}
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                logger.warning("Ignoring table state that is not an object: %r", type(parsed).__name__)
                return {}
            return parsed
        except (OSError, ValueError, StorageError) as e:
            logger.error("Error loading table state: %s", e)
            return {}

    def save_state(self, partial: Dict[str, Any]) -> None:
        try:
            merged = {**self.load_state(), **partial}
            self.store.set(self.key, json.dumps(merged))
            logger.debug("Saved table state: %s", sorted(partial))
        except (OSError, TypeError, ValueError, StorageError) as e:
            logger.error("Error saving table state: %s", e)

    def save_component_state(
        self,
        selected_columns: List[str],
        search_term: str = "",
        expanded_group: str = "",
    ) -> None:
        # An empty selection means the table has not initialised yet
        if not selected_columns:
            return
        self.save_state({
            "selectedColumns": list(selected_columns),
            "searchTerm": search_term,
            "expandedGroup": expanded_group,
        })

    def save_grid_state(
        self,
        column_state: Optional[List[Dict[str, Any]]] = None,
        filter_model: Optional[Dict[str, Any]] = None,
        sort_model: Optional[List[Any]] = None,
    ) -> None:
        self.save_state({
            "gridState": {
                "columnState": column_state or [],
                "filterModel": filter_model or {},
                "sortModel": sort_model or [],
            }
        })

    def grid_state(self) -> Dict[str, Any]:
        state = self.load_state().get("gridState") or {}
        return state if isinstance(state, dict) else {}

    def clear_state(self) -> None:
        try:
            self.store.delete(self.key)
            logger.info("Cleared table state")
        except (OSError, ValueError, StorageError) as e:
            logger.error("Error clearing table state: %s", e)
