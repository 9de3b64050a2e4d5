"""
Core constants and enums for BLE exercise-sensor recording.
"""

from enum import Enum

# GATT services
FTMS_SERVICE_UUID = "00001826-0000-1000-8000-00805f9b34fb"
CSC_SERVICE_UUID = "00001818-0000-1000-8000-00805f9b34fb"
HEART_RATE_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"

# GATT characteristics
INDOOR_BIKE_DATA_UUID = "00002ad2-0000-1000-8000-00805f9b34fb"
CSC_MEASUREMENT_UUID = "00002a5b-0000-1000-8000-00805f9b34fb"
HEART_RATE_MEASUREMENT_UUID = "00002a37-0000-1000-8000-00805f9b34fb"

# Minimum Indoor Bike Data payload accepted by the decoder
FTMS_MIN_LENGTH = 21

# Valid ranges, inclusive (anything outside is recorded as 0)
SPEED_RANGE = (0.0, 50.0)  # km/h
CADENCE_RANGE = (0.0, 150.0)  # rpm
POWER_RANGE = (0.0, 1000.0)  # W
RESISTANCE_RANGE = (0.0, 100.0)  # unitless level
HEART_RATE_RANGE = (30.0, 220.0)  # bpm

# Default wheel circumference (700x25c road tyre)
WHEEL_CIRCUMFERENCE_M = 2.105

# Samples kept in the live view window
LIVE_WINDOW_SIZE = 100

# Device name prefixes used during discovery
BIKE_NAME_PREFIXES = ("iConsole",)
HEART_RATE_NAME_PREFIXES = ("Polar",)


class Metric(str, Enum):
    """Recorded metric names."""

    SPEED = "speed"
    CADENCE = "cadence"
    POWER = "power"
    RESISTANCE = "resistance"
    HEART_RATE = "heart_rate"


ALL_METRICS = tuple(Metric)


class ServiceType(str, Enum):
    """GATT service layouts the decoder understands."""

    FITNESS_MACHINE = "Fitness Machine"
    CYCLING_SPEED_CADENCE = "Cycling Speed and Cadence"
    HEART_RATE = "Heart Rate"


class DeviceClass(str, Enum):
    """Kinds of device a negotiator can be asked to connect to."""

    BIKE = "bike"
    HEART_RATE = "hr"


SERVICE_UUIDS = {
    ServiceType.FITNESS_MACHINE: FTMS_SERVICE_UUID,
    ServiceType.CYCLING_SPEED_CADENCE: CSC_SERVICE_UUID,
    ServiceType.HEART_RATE: HEART_RATE_SERVICE_UUID,
}

# Characteristic whose payloads the decoder understands per service; None
# means every notify-capable characteristic of the service.
MEASUREMENT_UUIDS = {
    ServiceType.FITNESS_MACHINE: None,
    ServiceType.CYCLING_SPEED_CADENCE: CSC_MEASUREMENT_UUID,
    ServiceType.HEART_RATE: HEART_RATE_MEASUREMENT_UUID,
}

# Primary service first, then the fallback (tried once)
SERVICE_CANDIDATES = {
    DeviceClass.BIKE: (ServiceType.FITNESS_MACHINE, ServiceType.CYCLING_SPEED_CADENCE),
    DeviceClass.HEART_RATE: (ServiceType.HEART_RATE,),
}

# Application metadata
__version__ = "0.1.0"
__description__ = "Record workout sessions from BLE exercise-equipment sensors"
