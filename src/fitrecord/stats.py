"""
Session statistics.

Stateless helpers used when a session ends and when reporting on history.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .core import ALL_METRICS, Metric
from .models import HeartRateZone, MetricStats, SensorReading, Session, SessionStats, Zone

# (exclusive upper bound, zone, color), checked in order
HEART_RATE_ZONES = (
    (60, Zone.REST, "#3b82f6"),
    (100, Zone.LIGHT, "#10b981"),
    (140, Zone.MODERATE, "#f59e0b"),
    (170, Zone.HARD, "#f97316"),
)
MAXIMUM_ZONE_COLOR = "#ef4444"

Sample = Union[SensorReading, float, int]


def _values(stream: Iterable[Sample]) -> List[float]:
    return [
        sample.value if isinstance(sample, SensorReading) else float(sample)
        for sample in stream
    ]


def aggregate(stream: Iterable[Sample]) -> MetricStats:
    """Mean, maximum and minimum of a stream.

    An empty stream gives all zeros, which does not mean real zero readings
    were recorded.
    """
    values = _values(stream)
    if not values:
        return MetricStats(avg=0.0, max=0.0, min=0.0)
    return MetricStats(
        avg=sum(values) / len(values),
        max=max(values),
        min=min(values),
    )


def heart_rate_zone(bpm: float) -> HeartRateZone:
    """Classify a heart rate; lower bounds inclusive, upper bounds exclusive."""
    for upper, zone, color in HEART_RATE_ZONES:
        if bpm < upper:
            return HeartRateZone(zone, color)
    return HeartRateZone(Zone.MAXIMUM, MAXIMUM_ZONE_COLOR)


def session_stats(
    streams: Mapping[Metric, Iterable[Sample]],
    metrics: Sequence[Metric] = ALL_METRICS,
) -> SessionStats:
    """Aggregate every declared metric; missing streams count as empty."""
    per_metric: Dict[Metric, MetricStats] = {}
    for metric in metrics:
        per_metric[metric] = aggregate(streams.get(metric, ()))

    zone = None
    heart_rate = streams.get(Metric.HEART_RATE)
    if Metric.HEART_RATE in per_metric and heart_rate is not None and _values(heart_rate):
        zone = heart_rate_zone(per_metric[Metric.HEART_RATE].avg)

    return SessionStats(metrics=per_metric, heart_rate_zone=zone)


def _session_average(session: Session, metric: Metric) -> float:
    return aggregate(session.streams.get(metric, ())).avg


def percentile_rank(
    sessions: Sequence[Session], metric: Metric, target_index: int
) -> Optional[float]:
    """Percentile of one session's average among all sessions' averages.

    Returns None with fewer than two sessions. Ties resolve to the lowest
    position holding the target's value.
    """
    if len(sessions) < 2:
        return None

    averages = [_session_average(session, metric) for session in sessions]
    target = averages[target_index]
    position = sorted(averages).index(target)
    return position / (len(averages) - 1) * 100


def percentile_rankings(
    sessions: Sequence[Session],
    target_index: int,
    metrics: Sequence[Metric] = ALL_METRICS,
) -> Dict[Metric, Optional[float]]:
    return {
        metric: percentile_rank(sessions, metric, target_index) for metric in metrics
    }


def session_delta(current: float, previous: float) -> float:
    """Percent change from previous to current.

    A previous value of 0 gives 0, which cannot be told apart from an actual
    0% change.
    """
    if previous == 0:
        return 0.0
    return (current - previous) / previous * 100


def _stats_of(item: Union[Session, SessionStats]) -> SessionStats:
    if isinstance(item, SessionStats):
        return item
    if item.stats is not None:
        return item.stats
    return session_stats(item.streams)


def session_deltas(
    current: Union[Session, SessionStats],
    previous: Union[Session, SessionStats],
    metrics: Sequence[Metric] = ALL_METRICS,
) -> Dict[Metric, float]:
    """Percent change of each metric's average between two sessions."""
    current_stats = _stats_of(current)
    previous_stats = _stats_of(previous)
    return {
        metric: session_delta(current_stats.avg(metric), previous_stats.avg(metric))
        for metric in metrics
    }


def trend_stats(sessions: Iterable[Session]) -> List[Tuple[Session, SessionStats]]:
    """Sessions paired with their stats, oldest first."""
    ordered = sorted(sessions, key=lambda session: session.start_time)
    return [(session, _stats_of(session)) for session in ordered]
