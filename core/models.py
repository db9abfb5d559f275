from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any


class ColumnCategory(str, Enum):
    STATION = "station"
    PUBLIC_DATA = "public_data"
    STATUS_DATA = "status_data"
    MEASUREMENTS = "measurements_data"


# Nested data categories, in column-selector order
DATA_CATEGORIES = (
    ColumnCategory.PUBLIC_DATA,
    ColumnCategory.STATUS_DATA,
    ColumnCategory.MEASUREMENTS,
)

# Header prefix and timestamp column per data category
CATEGORY_LABELS = {
    ColumnCategory.PUBLIC_DATA: "Public",
    ColumnCategory.STATUS_DATA: "Status",
    ColumnCategory.MEASUREMENTS: "Measurements",
}

CATEGORY_TIMESTAMP_COLUMNS = {
    ColumnCategory.PUBLIC_DATA: "public_timestamp",
    ColumnCategory.STATUS_DATA: "status_timestamp",
    ColumnCategory.MEASUREMENTS: "measurements_timestamp",
}


@dataclass(frozen=True)
class ColumnId:
    """
    A grid column: a fixed station field or a key inside one of the
    nested data maps.

    The display id is the plain field name for station columns and
    ``<category>.<key>`` for data columns.
    """
    category: ColumnCategory
    key: str

    @property
    def display_id(self) -> str:
        if self.category is ColumnCategory.STATION:
            return self.key
        return f"{self.category.value}.{self.key}"

    @classmethod
    def parse(cls, display_id: str) -> "ColumnId":
        prefix, sep, key = display_id.partition(".")
        if sep:
            for category in DATA_CATEGORIES:
                if category.value == prefix:
                    return cls(category, key)
        return cls(ColumnCategory.STATION, display_id)

    def __str__(self) -> str:
        return self.display_id


@dataclass
class HourlyStationSample:
    """
    Parallel hourly arrays for one station.

    Index ``i`` of every array describes the same local hour bucket.
    """
    station_id: int
    hourly_online_array: List[bool] = field(default_factory=list)
    hourly_health_array: List[Optional[float]] = field(default_factory=list)
    hour_bucket_local: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HourlyStationSample":
        return cls(
            station_id=data.get("station_id"),
            hourly_online_array=list(data.get("hourly_online_array") or []),
            hourly_health_array=list(data.get("hourly_health_array") or []),
            hour_bucket_local=list(data.get("hour_bucket_local") or []),
        )


@dataclass
class OnlinePoint:
    timestamp: str
    online: int = 0
    offline: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "online": self.online, "offline": self.offline}


@dataclass
class HealthPoint:
    timestamp: str
    avg_health: float = 0.0
    min_health: float = 0.0
    max_health: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "avgHealth": self.avg_health,
            "minHealth": self.min_health,
            "maxHealth": self.max_health,
        }


@dataclass
class User:
    id: int
    email: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email}


@dataclass
class Session:
    token: str
    user_id: int
    expires_at: datetime

    @property
    def expired(self) -> bool:
        return datetime.now() >= self.expires_at
