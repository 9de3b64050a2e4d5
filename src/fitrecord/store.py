"""
Session persistence.

The recorder only depends on the ``SessionStore`` protocol. ``JsonSessionStore``
is the file-backed implementation used by the CLI: each session is stored as
parallel numeric arrays per metric plus its time bounds and aggregate columns.
"""

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .buffer import MetricStream
from .core import ALL_METRICS, Metric
from .models import SensorReading, Session
from .results import PersistenceError
from .stats import session_stats

logger = logging.getLogger(__name__)

# Older records kept every metric as a list of {time, value} points under
# one of these keys, with camelCase metric names.
LEGACY_STREAM_KEYS = ("data", "metrics_data", "metricsData")
LEGACY_METRIC_NAMES = {Metric.HEART_RATE: "heartRate"}


class SessionStore(Protocol):
    """Persistence and history collaborator used by the recorder."""

    def save_session(self, session: Session) -> str:
        """Persist an ended session and return its stored id.

        Raises:
            PersistenceError: if the session could not be saved
        """
        ...

    def fetch_sessions(self, user_context: Optional[str] = None) -> List[Session]:
        """Return stored sessions, oldest first."""
        ...


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def session_to_record(session: Session, user: str) -> Dict[str, Any]:
    """Flatten a session into a JSON-serializable record."""
    if session.end_time is None:
        raise PersistenceError(f"Session {session.id} has not ended")

    record: Dict[str, Any] = {
        "id": session.id,
        "user": user,
        "start_time": session.start_time.isoformat(),
        "end_time": session.end_time.isoformat(),
        "exercise_time": session.duration,
    }
    for metric in ALL_METRICS:
        stream = session.streams.get(metric, ())
        record[f"{metric.value}_data"] = [reading.value for reading in stream]
        record[f"{metric.value}_offsets"] = [
            (reading.timestamp - session.start_time).total_seconds()
            for reading in stream
        ]

    stats = session.stats or session_stats(session.streams)
    record.update(stats.as_columns())
    record["heart_rate_zone"] = (
        stats.heart_rate_zone.zone.value if stats.heart_rate_zone else None
    )
    return record


def _legacy_points(record: Dict[str, Any], metric: Metric) -> Optional[list]:
    for key in LEGACY_STREAM_KEYS:
        nested = record.get(key)
        if isinstance(nested, dict):
            points = nested.get(metric.value)
            if points is None:
                points = nested.get(LEGACY_METRIC_NAMES.get(metric, metric.value))
            return points or []
    return None


def session_from_record(record: Dict[str, Any]) -> Session:
    """Build a canonical, ended Session from a stored record of any known shape."""
    start = _parse_time(record.get("start_time") or record.get("startTime"))
    if start is None:
        raise PersistenceError(f"Session record {record.get('id')!r} has no start time")

    streams: Dict[Metric, MetricStream] = {}
    for metric in ALL_METRICS:
        readings: List[SensorReading] = []
        values = record.get(f"{metric.value}_data")
        if values is not None:
            offsets = record.get(f"{metric.value}_offsets") or range(len(values))
            for value, offset in zip(values, offsets):
                timestamp = start + timedelta(seconds=float(offset))
                readings.append(SensorReading(metric, float(value), timestamp))
        else:
            for index, point in enumerate(_legacy_points(record, metric) or []):
                timestamp = _parse_time(point.get("time")) or (
                    start + timedelta(seconds=index)
                )
                readings.append(
                    SensorReading(metric, float(point.get("value") or 0), timestamp)
                )
        streams[metric] = MetricStream.from_readings(metric, readings)

    end = _parse_time(record.get("end_time") or record.get("endTime"))
    if end is None:
        end = start + timedelta(seconds=float(record.get("exercise_time") or 0))

    session = Session(
        id=str(record.get("id")),
        start_time=start,
        end_time=end,
        streams=streams,
        persisted_id=str(record.get("id")),
    )
    session.stats = session_stats(session.streams)
    return session


class JsonSessionStore:
    """Stores sessions in a single JSON file."""

    def __init__(self, path: Path, user: str = "default") -> None:
        self.path = Path(path)
        self.user = user

    def _load_records(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {self.path}: {e}") from e
        if not isinstance(data, list):
            raise PersistenceError(f"Unexpected content in {self.path}")
        return data

    def _write_records(self, records: List[Dict[str, Any]]) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(records, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Failed to write {self.path}: {e}") from e

    def save_session(self, session: Session) -> str:
        record = session_to_record(session, self.user)
        records = [r for r in self._load_records() if r.get("id") != session.id]
        records.append(record)
        self._write_records(records)
        logger.info(f"Saved session {session.id} to {self.path}")
        return session.id

    def fetch_sessions(self, user_context: Optional[str] = None) -> List[Session]:
        user = user_context or self.user
        sessions = []
        for record in self._load_records():
            if record.get("user", "default") != user:
                continue
            try:
                sessions.append(session_from_record(record))
            except (PersistenceError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Skipping unreadable session {record.get('id')!r}: {e}")
        sessions.sort(key=lambda session: session.start_time)
        return sessions
