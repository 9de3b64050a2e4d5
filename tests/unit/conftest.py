"""Shared fixtures and BLE fakes for unit tests."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from fitrecord.buffer import MetricStream
from fitrecord.config import Settings
from fitrecord.core import ALL_METRICS, Metric
from fitrecord.models import SensorReading, Session
from fitrecord.stats import session_stats

T0 = datetime(2024, 5, 1, 7, 30, tzinfo=timezone.utc)


class FakeClock:
    """Clock advancing one second per call."""

    def __init__(self, start: datetime = T0, step: float = 1.0) -> None:
        self.now = start
        self.step = timedelta(seconds=step)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


class FakeCharacteristic:
    def __init__(self, uuid: str, properties: List[str]) -> None:
        self.uuid = uuid
        self.properties = properties


class FakeService:
    def __init__(self, uuid: str, characteristics: List[FakeCharacteristic]) -> None:
        self.uuid = uuid
        self.characteristics = characteristics


class FakeServices:
    def __init__(self, services: List[FakeService], lookup_error: Optional[Exception] = None) -> None:
        self._services = {service.uuid.lower(): service for service in services}
        self.lookup_error = lookup_error

    def get_service(self, uuid: str) -> Optional[FakeService]:
        if self.lookup_error is not None:
            raise self.lookup_error
        return self._services.get(uuid.lower())


class FakeDevice:
    def __init__(self, address: str = "AA:BB:CC:DD:EE:01", name: str = "iConsole+0419") -> None:
        self.address = address
        self.name = name


class FakeClient:
    """Stands in for BleakClient."""

    def __init__(
        self,
        device,
        services: List[FakeService],
        disconnected_callback=None,
        timeout: float = 5.0,
        fail_connect: Optional[Exception] = None,
        events: Optional[list] = None,
        lookup_error: Optional[Exception] = None,
        notify_error: Optional[Exception] = None,
    ) -> None:
        self.device = device
        self.services = FakeServices(services, lookup_error)
        self.notify_error = notify_error
        self.disconnected_callback = disconnected_callback
        self.timeout = timeout
        self.fail_connect = fail_connect
        self.is_connected = False
        self.handlers: Dict[str, object] = {}
        self.events = events if events is not None else []

    async def connect(self) -> bool:
        if self.fail_connect is not None:
            raise self.fail_connect
        self.is_connected = True
        return True

    async def disconnect(self) -> bool:
        self.events.append("client.disconnect")
        was_connected = self.is_connected
        self.is_connected = False
        if was_connected and self.disconnected_callback:
            self.disconnected_callback(self)
        return True

    async def start_notify(self, char, callback) -> None:
        if self.notify_error is not None:
            raise self.notify_error
        self.handlers[char.uuid] = callback

    async def stop_notify(self, char) -> None:
        self.handlers.pop(char.uuid, None)

    def notify(self, uuid: str, data: bytes) -> None:
        self.handlers[uuid](None, bytearray(data))

    def drop_link(self) -> None:
        """Simulate the device going out of range."""
        self.is_connected = False
        if self.disconnected_callback:
            self.disconnected_callback(self)


class FakeAdvertisement:
    def __init__(self, local_name: Optional[str], service_uuids: List[str]) -> None:
        self.local_name = local_name
        self.service_uuids = service_uuids


class FakeScanner:
    def __init__(self, found: Optional[list] = None) -> None:
        self.found = found or []

    async def discover(self, timeout: float = 10.0, return_adv: bool = False):
        return {device.address: (device, adv) for device, adv in self.found}

    async def find_device_by_address(self, address: str, timeout: float = 10.0):
        for device, _ in self.found:
            if device.address == address:
                return device
        return None


def make_session(
    values: Dict[Metric, List[float]],
    start: datetime = T0,
    session_id: str = "s",
) -> Session:
    """Build an ended session with one reading per second."""
    streams = {}
    for metric in ALL_METRICS:
        readings = [
            SensorReading(metric, float(value), start + timedelta(seconds=i))
            for i, value in enumerate(values.get(metric, []))
        ]
        streams[metric] = MetricStream.from_readings(metric, readings)
    longest = max((len(v) for v in values.values()), default=0)
    session = Session(
        id=session_id,
        start_time=start,
        end_time=start + timedelta(seconds=longest),
        streams=streams,
    )
    session.stats = session_stats(session.streams)
    return session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=tmp_path / "data", cache_dir=tmp_path / "cache")
