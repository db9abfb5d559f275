"""
Hourly bucket aggregation for the network charts.

Station-level parallel arrays (online flag, health %, local hour bucket) are
folded into one point per bucket, across all stations reporting that bucket.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .models import HourlyStationSample, OnlinePoint, HealthPoint

SampleLike = Union[HourlyStationSample, Dict[str, Any]]


def parse_bucket(bucket: str) -> Optional[datetime]:
    """
    Parse a bucket string such as ``2024-01-01T00:00`` or
    ``2025-10-02 09:50:00+00``. Aware values are converted to naive UTC.
    """
    text = str(bucket).strip().replace("Z", "+00:00")
    if len(text) > 16 and text[-3] in "+-" and text[-2:].isdigit():
        text = f"{text}:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is not None:
        moment = moment.replace(tzinfo=None) - (moment.utcoffset() or timedelta(0))
    return moment


def _sort_key(bucket: str) -> Tuple[int, Any]:
    parsed = parse_bucket(bucket)
    if parsed is None:
        return (1, bucket)
    return (0, parsed)


def _round2(value: float) -> float:
    """Two decimals, ties rounded up (80.125 -> 80.13), not half-to-even."""
    return math.floor(value * 100 + 0.5) / 100


def _samples(data: Iterable[SampleLike]) -> Iterable[HourlyStationSample]:
    for item in data:
        if isinstance(item, HourlyStationSample):
            yield item
        else:
            yield HourlyStationSample.from_dict(item)


def _bucket_at(sample: HourlyStationSample, index: int) -> Optional[str]:
    if index >= len(sample.hour_bucket_local):
        return None
    return sample.hour_bucket_local[index] or None


@dataclass
class _CountAccumulator:
    online: int = 0
    offline: int = 0


@dataclass
class _HealthAccumulator:
    sum: float = 0.0
    count: int = 0
    min: Optional[float] = None
    max: Optional[float] = None

    def add(self, value: Optional[float]) -> None:
        # Missing values count as 0 in the average; 0 is treated as missing for min/max
        numeric = float(value) if value is not None else 0.0
        self.sum += numeric
        self.count += 1
        if numeric != 0:
            self.min = numeric if self.min is None else min(self.min, numeric)
            self.max = numeric if self.max is None else max(self.max, numeric)


def process_online_data(data: Iterable[SampleLike]) -> List[OnlinePoint]:
    """Count online/offline stations per hour bucket, oldest bucket first."""
    buckets: Dict[str, _CountAccumulator] = {}
    for sample in _samples(data):
        for index, is_online in enumerate(sample.hourly_online_array):
            bucket = _bucket_at(sample, index)
            if not bucket:
                continue
            acc = buckets.setdefault(bucket, _CountAccumulator())
            if is_online:
                acc.online += 1
            else:
                acc.offline += 1

    return [
        OnlinePoint(timestamp=bucket, online=acc.online, offline=acc.offline)
        for bucket, acc in sorted(buckets.items(), key=lambda kv: _sort_key(kv[0]))
    ]


def process_health_data(data: Iterable[SampleLike]) -> List[HealthPoint]:
    """Average/min/max health per hour bucket, oldest bucket first."""
    buckets: Dict[str, _HealthAccumulator] = {}
    for sample in _samples(data):
        for index, value in enumerate(sample.hourly_health_array):
            bucket = _bucket_at(sample, index)
            if not bucket:
                continue
            buckets.setdefault(bucket, _HealthAccumulator()).add(value)

    points = []
    for bucket, acc in sorted(buckets.items(), key=lambda kv: _sort_key(kv[0])):
        avg = acc.sum / acc.count if acc.count else 0.0
        points.append(HealthPoint(
            timestamp=bucket,
            avg_health=_round2(avg),
            min_health=_round2(acc.min if acc.min is not None else 0.0),
            max_health=_round2(acc.max if acc.max is not None else 0.0),
        ))
    return points


def summarize_online(points: List[OnlinePoint]) -> Dict[str, Any]:
    """Latest-bucket counts for the overview header."""
    if not points:
        return {"timestamp": None, "online": 0, "offline": 0, "total": 0, "online_pct": 0.0}
    latest = points[-1]
    total = latest.online + latest.offline
    return {
        "timestamp": latest.timestamp,
        "online": latest.online,
        "offline": latest.offline,
        "total": total,
        "online_pct": round(100.0 * latest.online / total, 2) if total else 0.0,
    }
