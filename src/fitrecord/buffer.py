"""
Per-metric reading buffers.

Two buffers with different jobs:

* ``MetricStream`` holds every reading of a session and is what gets
  persisted. It only grows, and is frozen when the session ends.
* ``LiveWindow`` holds the most recent readings for display and silently
  evicts the oldest ones.
"""

import logging
from collections import deque
from typing import Deque, Iterator, List, Optional

from .core import LIVE_WINDOW_SIZE, Metric
from .models import SensorReading

logger = logging.getLogger(__name__)


class MetricStream:
    """Append-only, insertion-ordered readings for one metric."""

    def __init__(self, metric: Metric) -> None:
        self.metric = metric
        self._readings: List[SensorReading] = []
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def append(self, reading: SensorReading) -> bool:
        """Append a reading.

        Returns:
            True if stored, False if the stream is frozen or the reading
            belongs to another metric
        """
        if self._frozen:
            logger.debug(f"Dropped {self.metric.value} reading: stream is frozen")
            return False
        if reading.metric != self.metric:
            logger.debug(
                f"Dropped {reading.metric.value} reading: stream holds {self.metric.value}"
            )
            return False
        self._readings.append(reading)
        return True

    def freeze(self) -> None:
        self._frozen = True

    def values(self) -> List[float]:
        return [reading.value for reading in self._readings]

    @property
    def last(self) -> Optional[SensorReading]:
        return self._readings[-1] if self._readings else None

    def __len__(self) -> int:
        return len(self._readings)

    def __iter__(self) -> Iterator[SensorReading]:
        return iter(self._readings)

    def __getitem__(self, index: int) -> SensorReading:
        return self._readings[index]

    def __repr__(self) -> str:
        state = "frozen" if self._frozen else "open"
        return f"MetricStream({self.metric.value}, {len(self)} readings, {state})"

    @classmethod
    def from_readings(cls, metric: Metric, readings, frozen: bool = True) -> "MetricStream":
        """Rebuild a stream, e.g. from storage."""
        stream = cls(metric)
        for reading in readings:
            stream.append(reading)
        if frozen:
            stream.freeze()
        return stream


class LiveWindow:
    """Most recent readings for one metric, capped at ``capacity``."""

    def __init__(self, metric: Metric, capacity: int = LIVE_WINDOW_SIZE) -> None:
        if capacity < 1:
            raise ValueError(f"Live window capacity must be positive, got {capacity}")
        self.metric = metric
        self.capacity = capacity
        self._readings: Deque[SensorReading] = deque(maxlen=capacity)

    def append(self, reading: SensorReading) -> None:
        self._readings.append(reading)

    def clear(self) -> None:
        self._readings.clear()

    def values(self) -> List[float]:
        return [reading.value for reading in self._readings]

    @property
    def latest(self) -> Optional[float]:
        return self._readings[-1].value if self._readings else None

    def __len__(self) -> int:
        return len(self._readings)

    def __iter__(self) -> Iterator[SensorReading]:
        return iter(self._readings)
