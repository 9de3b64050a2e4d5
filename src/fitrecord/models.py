"""
Data types shared by the decoder, recorder, statistics engine and store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional

from .core import Metric, ServiceType

if TYPE_CHECKING:
    from .buffer import MetricStream


@dataclass(frozen=True)
class SensorReading:
    """One validated sensor value."""

    metric: Metric
    value: float
    timestamp: datetime


@dataclass(frozen=True)
class CscMeasurement:
    """Raw cumulative counters from one CSC Measurement notification.

    Event times are in 1/1024 s and wrap at 16 bits; revolution counters wrap
    at 32 bits (wheel) and 16 bits (crank).
    """

    wheel_revolutions: Optional[int] = None
    wheel_event_time: Optional[int] = None
    crank_revolutions: Optional[int] = None
    crank_event_time: Optional[int] = None


@dataclass(frozen=True)
class DeviceBinding:
    """A connected device and the service it was bound through."""

    device_id: str
    name: str
    service_type: ServiceType


@dataclass(frozen=True)
class MetricStats:
    avg: float = 0.0
    max: float = 0.0
    min: float = 0.0


class Zone(str, Enum):
    REST = "Rest"
    LIGHT = "Light"
    MODERATE = "Moderate"
    HARD = "Hard"
    MAXIMUM = "Maximum"


@dataclass(frozen=True)
class HeartRateZone:
    zone: Zone
    color: str


@dataclass(frozen=True)
class SessionStats:
    """Aggregates for one session.

    Columns are also readable as attributes, e.g. ``stats.avg_speed`` or
    ``stats.max_heart_rate``.
    """

    metrics: Dict[Metric, MetricStats]
    heart_rate_zone: Optional[HeartRateZone] = None
    percentile_rank: Dict[Metric, Optional[float]] = field(default_factory=dict)

    def avg(self, metric: Metric) -> float:
        return self.metrics.get(metric, MetricStats()).avg

    def max(self, metric: Metric) -> float:
        return self.metrics.get(metric, MetricStats()).max

    def min(self, metric: Metric) -> float:
        return self.metrics.get(metric, MetricStats()).min

    def as_columns(self) -> Dict[str, float]:
        """Flatten to ``avg_<metric>``/``max_<metric>``/``min_<metric>`` columns."""
        columns: Dict[str, float] = {}
        for metric, stats in self.metrics.items():
            columns[f"avg_{metric.value}"] = stats.avg
            columns[f"max_{metric.value}"] = stats.max
            columns[f"min_{metric.value}"] = stats.min
        return columns

    def __getattr__(self, name: str) -> float:
        if name.startswith("_") or name == "metrics":
            raise AttributeError(name)
        columns = self.as_columns()
        if name in columns:
            return columns[name]
        raise AttributeError(f"{type(self).__name__!r} has no attribute {name!r}")


@dataclass
class Session:
    """One recorded workout.

    Mutated only by the session recorder while recording. Once ``end_time``
    is set the streams are frozen and the session is treated as a value.
    """

    id: str
    start_time: datetime
    streams: Dict[Metric, "MetricStream"]
    end_time: Optional[datetime] = None
    stats: Optional[SessionStats] = None
    persisted_id: Optional[str] = None

    @property
    def is_ended(self) -> bool:
        return self.end_time is not None

    @property
    def duration(self) -> float:
        """Elapsed seconds, up to now if still recording."""
        end = self.end_time or datetime.now(self.start_time.tzinfo)
        return max(0.0, (end - self.start_time).total_seconds())
