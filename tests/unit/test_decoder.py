"""Characteristic decoder tests."""

import struct
from datetime import datetime, timezone

import pytest

from fitrecord.core import Metric, ServiceType
from fitrecord.decoder import (
    decode,
    decode_csc_measurement,
    parse_csc_measurement,
    scale_power,
)
from fitrecord.models import CscMeasurement
from fitrecord.results import DecodeError

T0 = datetime(2024, 5, 1, 7, 30, tzinfo=timezone.utc)


def bike_data(flags: int, speed: int, *fields: bytes) -> bytes:
    """Build an Indoor Bike Data payload padded to the minimum length."""
    payload = struct.pack("<HH", flags, speed) + b"".join(fields)
    return payload.ljust(21, b"\x00")


def csc(wheel=None, crank=None) -> bytes:
    flags = 0
    body = b""
    if wheel is not None:
        flags |= 0x01
        body += struct.pack("<IH", *wheel)
    if crank is not None:
        flags |= 0x02
        body += struct.pack("<HH", *crank)
    return bytes([flags]) + body


# ========== Fitness Machine ==========


@pytest.mark.parametrize("raw_speed", [0, 1, 999, 2550, 5000, 5001, 6000, 65535])
def test_speed_only_payload_scales_and_clamps(raw_speed):
    result = decode(ServiceType.FITNESS_MACHINE, bike_data(0x00, raw_speed), timestamp=T0)

    expected = raw_speed * 0.01 if raw_speed * 0.01 <= 50 else 0.0
    assert result.ok
    assert result.value(Metric.SPEED) == pytest.approx(expected)
    assert result.value(Metric.CADENCE) == 0
    assert result.value(Metric.POWER) == 0


@pytest.mark.parametrize("length", [0, 1, 4, 20])
def test_short_bike_payload_is_truncated(length):
    result = decode(ServiceType.FITNESS_MACHINE, bytes(length))

    assert result.error is DecodeError.TRUNCATED
    assert result.readings == ()
    assert not result.ok


def test_cadence_after_skipped_average_speed():
    payload = bike_data(
        0x02 | 0x04,
        2000,
        struct.pack("<H", 1900),  # average speed, skipped
        struct.pack("<H", 170),  # 85 rpm
    )

    result = decode(ServiceType.FITNESS_MACHINE, payload)

    assert result.value(Metric.SPEED) == pytest.approx(20.0)
    assert result.value(Metric.CADENCE) == pytest.approx(85.0)


def test_power_offset_follows_every_optional_field():
    payload = bike_data(
        0x02 | 0x04 | 0x08 | 0x10 | 0x40,
        3000,
        struct.pack("<H", 2900),  # average speed
        struct.pack("<H", 180),  # cadence 90 rpm
        struct.pack("<H", 170),  # average cadence
        b"\x10\x27\x00",  # total distance
        struct.pack("<h", 250),
    )

    result = decode(ServiceType.FITNESS_MACHINE, payload, timestamp=T0)

    assert result.value(Metric.SPEED) == pytest.approx(30.0)
    assert result.value(Metric.CADENCE) == pytest.approx(90.0)
    assert result.value(Metric.POWER) == pytest.approx(250.0)
    assert all(reading.timestamp == T0 for reading in result.readings)


def test_resistance_level_precedes_power():
    payload = bike_data(0x20 | 0x40, 1500, struct.pack("<h", 12), struct.pack("<h", 180))

    result = decode(ServiceType.FITNESS_MACHINE, payload)

    assert result.value(Metric.RESISTANCE) == 12
    assert result.value(Metric.POWER) == 180


def test_resistance_only_reported_when_flagged():
    result = decode(ServiceType.FITNESS_MACHINE, bike_data(0x00, 1500))

    assert result.value(Metric.RESISTANCE) is None
    assert {r.metric for r in result.readings} == {Metric.SPEED, Metric.CADENCE, Metric.POWER}


@pytest.mark.parametrize(
    "raw, expected",
    [
        (15000, 150.0),  # pre-scaled by 100
        (2, 200.0),  # reported in hundreds of watts
        (0, 0.0),
        (10, 10.0),
        (1000, 1000.0),
        (1001, 10.01),
        (-5, -500.0),
    ],
)
def test_power_magnitude_heuristic(raw, expected):
    assert scale_power(raw) == pytest.approx(expected)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (-5, 0.0),
        (-200, 0.0),
        (-15000, 0.0),
        (32000, 320.0),
        (999, 999.0),
    ],
)
def test_decoded_power_is_range_checked(raw, expected):
    payload = bike_data(0x40, 1000, struct.pack("<h", raw))

    value = decode(ServiceType.FITNESS_MACHINE, payload).value(Metric.POWER)

    assert value == pytest.approx(expected)


def test_out_of_range_cadence_becomes_zero():
    payload = bike_data(0x04, 1000, struct.pack("<H", 400))  # 200 rpm

    result = decode(ServiceType.FITNESS_MACHINE, payload)

    assert result.value(Metric.CADENCE) == 0
    assert result.value(Metric.SPEED) == pytest.approx(10.0)


# ========== Heart Rate ==========


def test_heart_rate_8bit():
    result = decode(ServiceType.HEART_RATE, bytes([0x00, 72]))

    assert result.value(Metric.HEART_RATE) == 72


def test_heart_rate_16bit():
    result = decode(ServiceType.HEART_RATE, bytes([0x01]) + struct.pack("<H", 181))

    assert result.value(Metric.HEART_RATE) == 181


@pytest.mark.parametrize("bpm", [0, 29, 221, 300])
def test_heart_rate_out_of_range_becomes_zero(bpm):
    result = decode(ServiceType.HEART_RATE, bytes([0x01]) + struct.pack("<H", bpm))

    assert result.ok
    assert result.value(Metric.HEART_RATE) == 0


@pytest.mark.parametrize("payload", [b"", b"\x00", b"\x01\x48"])
def test_short_heart_rate_payload_is_truncated(payload):
    result = decode(ServiceType.HEART_RATE, payload)

    assert result.error is DecodeError.TRUNCATED


# ========== Cycling Speed and Cadence ==========


def test_csc_first_measurement_has_no_readings():
    result = decode(ServiceType.CYCLING_SPEED_CADENCE, csc(wheel=(100, 2048)))

    assert result.ok
    assert result.readings == ()
    assert result.measurement == CscMeasurement(wheel_revolutions=100, wheel_event_time=2048)


def test_csc_speed_and_cadence_from_deltas():
    previous = parse_csc_measurement(csc(wheel=(100, 1024), crank=(40, 1024)))
    payload = csc(wheel=(102, 2048), crank=(41, 2048))

    result = decode_csc_measurement(payload, previous, wheel_circumference_m=2.0)

    # 2 revolutions of 2 m in one second
    assert result.value(Metric.SPEED) == pytest.approx(14.4)
    assert result.value(Metric.CADENCE) == pytest.approx(60.0)
    assert result.value(Metric.POWER) is None


def test_csc_counters_wrap_around():
    previous = parse_csc_measurement(csc(wheel=(0xFFFFFFFF, 65000), crank=(0xFFFF, 65000)))
    payload = csc(wheel=(1, (65000 + 1024) % 0x10000), crank=(0, (65000 + 512) % 0x10000))

    result = decode_csc_measurement(payload, previous, wheel_circumference_m=2.0)

    assert result.value(Metric.SPEED) == pytest.approx(14.4)
    assert result.value(Metric.CADENCE) == pytest.approx(120.0)


def test_csc_repeated_event_time_means_stopped():
    previous = parse_csc_measurement(csc(wheel=(10, 4096)))

    result = decode_csc_measurement(csc(wheel=(10, 4096)), previous)

    assert result.value(Metric.SPEED) == 0


def test_csc_truncated_payload():
    result = decode(ServiceType.CYCLING_SPEED_CADENCE, bytes([0x03, 1, 2, 3, 4]))

    assert result.error is DecodeError.TRUNCATED
    assert result.measurement is None


def test_unknown_service_type_is_unsupported():
    result = decode("Battery", b"\x64")  # type: ignore[arg-type]

    assert result.error is DecodeError.UNSUPPORTED
