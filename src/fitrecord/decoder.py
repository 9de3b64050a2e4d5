"""
Characteristic payload decoders.

Pure functions that turn a notification buffer into validated sensor
readings. Nothing here keeps state between calls; the CSC decoder takes the
previous measurement explicitly because speed and cadence are derived from
counter deltas.

Layouts:

Indoor Bike Data (FTMS, 0x2AD2), at least 21 bytes:
    [0:2]   flags, uint16 LE
    [2:4]   instantaneous speed, uint16 LE, 0.01 km/h
    then, in flag order:
    0x02    average speed, 2 bytes (skipped)
    0x04    instantaneous cadence, uint16 LE, 0.5 rpm
    0x08    average cadence, 2 bytes (skipped)
    0x10    total distance, 3 bytes (skipped)
    0x20    resistance level, sint16 LE
    0x40    instantaneous power, sint16 LE, W (see scale_power)

CSC Measurement (0x2A5B):
    [0]     flags
    0x01    cumulative wheel revolutions uint32 LE, last wheel event uint16 LE
    0x02    cumulative crank revolutions uint16 LE, last crank event uint16 LE

Heart Rate Measurement (0x2A37):
    [0]     flags, 0x01 selects a uint16 LE value over uint8
    [1:]    heart rate, bpm
"""

import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .core import (
    CADENCE_RANGE,
    FTMS_MIN_LENGTH,
    HEART_RATE_RANGE,
    POWER_RANGE,
    RESISTANCE_RANGE,
    SPEED_RANGE,
    WHEEL_CIRCUMFERENCE_M,
    Metric,
    ServiceType,
)
from .models import CscMeasurement, SensorReading
from .results import DecodeError

logger = logging.getLogger(__name__)

# Indoor Bike Data flag bits
FLAG_AVERAGE_SPEED = 0x02
FLAG_CADENCE = 0x04
FLAG_AVERAGE_CADENCE = 0x08
FLAG_TOTAL_DISTANCE = 0x10
FLAG_RESISTANCE = 0x20
FLAG_POWER = 0x40

# CSC Measurement flag bits
FLAG_WHEEL_DATA = 0x01
FLAG_CRANK_DATA = 0x02

# Heart Rate Measurement flag bits
FLAG_HR_16BIT = 0x01

CSC_EVENT_TIME_UNITS = 1024.0


@dataclass(frozen=True)
class DecodeResult:
    """Readings decoded from one notification, or the reason there are none."""

    readings: Tuple[SensorReading, ...] = ()
    error: Optional[DecodeError] = None
    measurement: Optional[CscMeasurement] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def value(self, metric: Metric) -> Optional[float]:
        """Value of the first reading for metric, if any."""
        for reading in self.readings:
            if reading.metric == metric:
                return reading.value
        return None


def validate(value: float, bounds: Tuple[float, float]) -> float:
    """Return value if it lies within bounds, else the 0 sentinel."""
    low, high = bounds
    return float(value) if low <= value <= high else 0.0


def scale_power(raw: int) -> float:
    """Normalize a raw power field.

    Some trainers report power pre-scaled by 100 and others in single watts
    divided by 100. This magnitude heuristic keeps those devices readable and
    must stay as is: above 1000 is divided by 100, below 10 is multiplied by
    100, anything else is taken as watts.
    """
    if abs(raw) > 1000:
        return raw / 100
    if abs(raw) < 10:
        return float(raw * 100)
    return float(raw)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def decode_indoor_bike_data(
    buffer: bytes, timestamp: Optional[datetime] = None
) -> DecodeResult:
    """Decode an FTMS Indoor Bike Data payload into speed/cadence/power."""
    if len(buffer) < FTMS_MIN_LENGTH:
        return DecodeResult(error=DecodeError.TRUNCATED)

    timestamp = timestamp or _now()
    flags, raw_speed = struct.unpack_from("<HH", buffer, 0)
    offset = 4

    cadence = 0.0
    power = 0.0
    resistance: Optional[float] = None

    if flags & FLAG_AVERAGE_SPEED:
        offset += 2
    if flags & FLAG_CADENCE:
        cadence = struct.unpack_from("<H", buffer, offset)[0] * 0.5
        offset += 2
    if flags & FLAG_AVERAGE_CADENCE:
        offset += 2
    if flags & FLAG_TOTAL_DISTANCE:
        offset += 3
    if flags & FLAG_RESISTANCE:
        resistance = float(struct.unpack_from("<h", buffer, offset)[0])
        offset += 2
    if flags & FLAG_POWER:
        power = scale_power(struct.unpack_from("<h", buffer, offset)[0])
        offset += 2

    readings = [
        SensorReading(Metric.SPEED, validate(raw_speed * 0.01, SPEED_RANGE), timestamp),
        SensorReading(Metric.CADENCE, validate(cadence, CADENCE_RANGE), timestamp),
        SensorReading(Metric.POWER, validate(power, POWER_RANGE), timestamp),
    ]
    if resistance is not None:
        readings.append(
            SensorReading(
                Metric.RESISTANCE, validate(resistance, RESISTANCE_RANGE), timestamp
            )
        )
    return DecodeResult(readings=tuple(readings))


def parse_csc_measurement(buffer: bytes) -> Optional[CscMeasurement]:
    """Extract the raw counters from a CSC Measurement payload.

    Returns None if the buffer is shorter than its flags declare.
    """
    if len(buffer) < 1:
        return None

    flags = buffer[0]
    required = 1
    if flags & FLAG_WHEEL_DATA:
        required += 6
    if flags & FLAG_CRANK_DATA:
        required += 4
    if len(buffer) < required:
        return None

    offset = 1
    wheel_revs = wheel_time = crank_revs = crank_time = None
    if flags & FLAG_WHEEL_DATA:
        wheel_revs, wheel_time = struct.unpack_from("<IH", buffer, offset)
        offset += 6
    if flags & FLAG_CRANK_DATA:
        crank_revs, crank_time = struct.unpack_from("<HH", buffer, offset)
        offset += 4

    return CscMeasurement(
        wheel_revolutions=wheel_revs,
        wheel_event_time=wheel_time,
        crank_revolutions=crank_revs,
        crank_event_time=crank_time,
    )


def _revolution_rate(
    revs: int, prev_revs: int, event: int, prev_event: int, revs_modulo: int
) -> float:
    """Revolutions per second between two cumulative samples, 0 if no time passed."""
    delta_revs = (revs - prev_revs) % revs_modulo
    delta_time = ((event - prev_event) % 0x10000) / CSC_EVENT_TIME_UNITS
    if delta_time == 0:
        return 0.0
    return delta_revs / delta_time


def decode_csc_measurement(
    buffer: bytes,
    previous: Optional[CscMeasurement] = None,
    timestamp: Optional[datetime] = None,
    wheel_circumference_m: float = WHEEL_CIRCUMFERENCE_M,
) -> DecodeResult:
    """Decode a CSC Measurement into speed/cadence using the previous sample.

    The first measurement of a connection has nothing to compare against and
    yields no readings, only the measurement to pass back in next time.
    """
    measurement = parse_csc_measurement(buffer)
    if measurement is None:
        return DecodeResult(error=DecodeError.TRUNCATED)
    if previous is None:
        return DecodeResult(measurement=measurement)

    timestamp = timestamp or _now()
    readings: List[SensorReading] = []

    if (
        measurement.wheel_revolutions is not None
        and previous.wheel_revolutions is not None
    ):
        rate = _revolution_rate(
            measurement.wheel_revolutions,
            previous.wheel_revolutions,
            measurement.wheel_event_time,  # type: ignore[arg-type]
            previous.wheel_event_time,  # type: ignore[arg-type]
            0x100000000,
        )
        speed = rate * wheel_circumference_m * 3.6
        readings.append(
            SensorReading(Metric.SPEED, validate(speed, SPEED_RANGE), timestamp)
        )

    if (
        measurement.crank_revolutions is not None
        and previous.crank_revolutions is not None
    ):
        rate = _revolution_rate(
            measurement.crank_revolutions,
            previous.crank_revolutions,
            measurement.crank_event_time,  # type: ignore[arg-type]
            previous.crank_event_time,  # type: ignore[arg-type]
            0x10000,
        )
        readings.append(
            SensorReading(Metric.CADENCE, validate(rate * 60, CADENCE_RANGE), timestamp)
        )

    return DecodeResult(readings=tuple(readings), measurement=measurement)


def decode_heart_rate_measurement(
    buffer: bytes, timestamp: Optional[datetime] = None
) -> DecodeResult:
    """Decode a Heart Rate Measurement payload."""
    if len(buffer) < 2:
        return DecodeResult(error=DecodeError.TRUNCATED)

    flags = buffer[0]
    if flags & FLAG_HR_16BIT:
        if len(buffer) < 3:
            return DecodeResult(error=DecodeError.TRUNCATED)
        heart_rate = struct.unpack_from("<H", buffer, 1)[0]
    else:
        heart_rate = buffer[1]

    reading = SensorReading(
        Metric.HEART_RATE,
        validate(heart_rate, HEART_RATE_RANGE),
        timestamp or _now(),
    )
    return DecodeResult(readings=(reading,))


def decode(
    service_type: ServiceType,
    buffer: bytes,
    previous: Optional[CscMeasurement] = None,
    timestamp: Optional[datetime] = None,
    wheel_circumference_m: float = WHEEL_CIRCUMFERENCE_M,
) -> DecodeResult:
    """Decode a notification payload for the given service type.

    Never raises for malformed input: a payload that cannot be decoded comes
    back with ``error`` set and no readings.
    """
    if service_type == ServiceType.FITNESS_MACHINE:
        return decode_indoor_bike_data(buffer, timestamp)
    if service_type == ServiceType.CYCLING_SPEED_CADENCE:
        return decode_csc_measurement(
            buffer, previous, timestamp, wheel_circumference_m
        )
    if service_type == ServiceType.HEART_RATE:
        return decode_heart_rate_measurement(buffer, timestamp)

    logger.warning(f"No decoder for service type: {service_type}")
    return DecodeResult(error=DecodeError.UNSUPPORTED)
