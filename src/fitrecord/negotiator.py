"""
BLE connection and service negotiation for exercise sensors.

A ServiceNegotiator owns one device connection. It picks the first available
service from the device class's candidates (primary, then a single fallback),
subscribes to its notifications, decodes every payload and hands the readings
to one callback.

States: DISCOVERING -> SERVICE_SELECTED -> SUBSCRIBED -> DISCONNECTED.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from .config import Settings
from .core import (
    BIKE_NAME_PREFIXES,
    HEART_RATE_NAME_PREFIXES,
    MEASUREMENT_UUIDS,
    SERVICE_CANDIDATES,
    SERVICE_UUIDS,
    DeviceClass,
    Metric,
    ServiceType,
)
from .decoder import decode
from .models import CscMeasurement, DeviceBinding, SensorReading
from .results import NegotiationResult

logger = logging.getLogger(__name__)

NAME_PREFIXES = {
    DeviceClass.BIKE: BIKE_NAME_PREFIXES,
    DeviceClass.HEART_RATE: HEART_RATE_NAME_PREFIXES,
}


class NegotiatorState(Enum):
    DISCOVERING = "discovering"
    SERVICE_SELECTED = "service_selected"
    SUBSCRIBED = "subscribed"
    DISCONNECTED = "disconnected"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ServiceNegotiator:
    """Connects to one device and streams decoded readings from it."""

    def __init__(
        self,
        device_class: DeviceClass,
        settings: Optional[Settings] = None,
        client_factory: Callable[..., Any] = BleakClient,
        scanner: Any = BleakScanner,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize negotiator with no device connection.

        Args:
            device_class: Kind of device to look for
            settings: Runtime settings (read from the environment if None)
            client_factory: Builds the GATT client for a device
            scanner: Provides ``discover`` and ``find_device_by_address``
            clock: Source of reading timestamps
        """
        self.device_class = device_class
        self.settings = settings or Settings.from_env()
        self._client_factory = client_factory
        self._scanner = scanner
        self._clock = clock

        self._state = NegotiatorState.DISCONNECTED
        self._client: Optional[Any] = None
        self._device: Optional[Any] = None
        self._binding: Optional[DeviceBinding] = None
        self._subscribed: List[Any] = []
        self._csc_previous: Optional[CscMeasurement] = None
        self._last_values: Dict[Metric, float] = {}
        self.notifications_received = 0
        self.notifications_dropped = 0

        # Callbacks
        self._on_reading: Optional[Callable[[SensorReading], None]] = None
        self._on_disconnect: Optional[Callable[[DeviceBinding, datetime], None]] = None

    @property
    def state(self) -> NegotiatorState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if subscribed to a connected device."""
        return (
            self._state == NegotiatorState.SUBSCRIBED
            and self._client is not None
            and self._client.is_connected
        )

    @property
    def binding(self) -> Optional[DeviceBinding]:
        return self._binding

    @property
    def service_type(self) -> Optional[ServiceType]:
        return self._binding.service_type if self._binding else None

    def set_on_reading(self, callback: Callable[[SensorReading], None]) -> None:
        """Set callback for decoded readings.

        Args:
            callback: Function called once per reading, synchronously
        """
        self._on_reading = callback

    def set_on_disconnect(
        self, callback: Callable[[DeviceBinding, datetime], None]
    ) -> None:
        """Set callback for disconnect events.

        Args:
            callback: Function called with the lost binding and the disconnect
                instant, before the device handle is released
        """
        self._on_disconnect = callback

    # ========== Address cache ==========

    def _load_cache(self) -> Dict[str, str]:
        cache_file = self.settings.address_cache_file
        try:
            if cache_file.exists():
                with open(cache_file, "r") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return data
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load cached addresses: {e}")
        return {}

    def _load_cached_address(self) -> Optional[str]:
        """Load cached device address for this device class."""
        return self._load_cache().get(self.device_class.value)

    def _save_cached_address(self, address: str) -> None:
        """Save device address to cache file.

        Args:
            address: Bluetooth address to cache
        """
        cache_file = self.settings.address_cache_file
        data = self._load_cache()
        data[self.device_class.value] = address
        try:
            cache_file.parent.mkdir(parents=True, exist_ok=True)
            with open(cache_file, "w") as f:
                json.dump(data, f, indent=2)
            logger.info(f"Cached {self.device_class.value} address: {address}")
        except OSError as e:
            logger.warning(f"Failed to save cached address: {e}")

    def clear_address_cache(self) -> None:
        """Clear the cached address for this device class.

        This will force rediscovery on next connection attempt.
        """
        cache_file = self.settings.address_cache_file
        data = self._load_cache()
        if data.pop(self.device_class.value, None) is None:
            return
        try:
            with open(cache_file, "w") as f:
                json.dump(data, f, indent=2)
            logger.info(f"Cleared cached {self.device_class.value} address")
        except OSError as e:
            logger.warning(f"Failed to clear cached address: {e}")

    # ========== Discovery and connection ==========

    def _matches(self, name: Optional[str], service_uuids: List[str]) -> bool:
        if name and any(name.startswith(p) for p in NAME_PREFIXES[self.device_class]):
            return True
        advertised = {uuid.lower() for uuid in service_uuids}
        return any(
            SERVICE_UUIDS[service_type] in advertised
            for service_type in SERVICE_CANDIDATES[self.device_class]
        )

    async def discover(self) -> Optional[Any]:
        """Scan for a device of this negotiator's class.

        Returns:
            The first matching BLE device, or None
        """
        self._state = NegotiatorState.DISCOVERING
        try:
            logger.info(f"Scanning for {self.device_class.value} devices...")
            found = await self._scanner.discover(
                timeout=self.settings.scan_timeout, return_adv=True
            )
        except (BleakError, OSError) as e:
            logger.error(f"Discovery failed: {e}")
            self._state = NegotiatorState.DISCONNECTED
            return None

        for device, adv in found.values():
            name = getattr(adv, "local_name", None) or device.name
            service_uuids = list(getattr(adv, "service_uuids", None) or [])
            if self._matches(name, service_uuids):
                logger.info(f"Found device: {name or 'Unknown'} ({device.address})")
                self._device = device
                return device

        logger.warning(f"No {self.device_class.value} device found")
        self._state = NegotiatorState.DISCONNECTED
        return None

    async def _find_cached_device(self) -> Optional[Any]:
        cached_address = self._load_cached_address()
        if not cached_address:
            return None
        logger.info(f"Trying cached address: {cached_address}")
        try:
            return await self._scanner.find_device_by_address(
                cached_address, timeout=self.settings.connect_timeout
            )
        except (BleakError, OSError) as e:
            logger.warning(f"Cached address failed: {e}")
            return None

    async def connect(self, device: Optional[Any] = None) -> NegotiationResult:
        """Connect to a device and subscribe to its best available service.

        Uses the given device, else the cached address, else a fresh scan.

        Returns:
            NegotiationResult indicating success or why it failed
        """
        if self.is_connected:
            logger.warning("Already connected")
            return NegotiationResult.SUCCESS

        self._state = NegotiatorState.DISCOVERING
        if device is None:
            device = await self._find_cached_device()
        if device is None:
            device = await self.discover()
        if device is None:
            self._state = NegotiatorState.DISCONNECTED
            return NegotiationResult.DEVICE_NOT_FOUND

        self._device = device
        client = self._client_factory(
            device,
            disconnected_callback=self._on_device_disconnect,
            timeout=self.settings.connect_timeout,
        )
        try:
            logger.info(f"Connecting to {device.name or device.address}...")
            await client.connect()
        except Exception as e:
            logger.error(f"Connection failed: {e}")
            self._state = NegotiatorState.DISCONNECTED
            return NegotiationResult.CONNECTION_FAILED

        self._client = client
        try:
            result = await self._negotiate(client)
        except Exception as e:
            logger.error(f"Service negotiation failed: {e}")
            result = NegotiationResult.CONNECTION_FAILED
        if result != NegotiationResult.SUCCESS:
            self._client = None
            self._binding = None
            self._state = NegotiatorState.DISCONNECTED
            try:
                await client.disconnect()
            except Exception as e:
                logger.error(f"Disconnect failed: {e}")
            return result

        self._save_cached_address(device.address)
        return NegotiationResult.SUCCESS

    async def _negotiate(self, client: Any) -> NegotiationResult:
        """Try the primary service, then the fallback once."""
        for service_type in SERVICE_CANDIDATES[self.device_class]:
            result = await self._subscribe(client, service_type)
            if result == NegotiationResult.SUCCESS:
                self._binding = DeviceBinding(
                    device_id=self._device.address,
                    name=self._device.name or "Unknown device",
                    service_type=service_type,
                )
                self._state = NegotiatorState.SUBSCRIBED
                logger.info(
                    f"Connected to {self._binding.name} via {service_type.value} Service"
                )
                return result
            logger.warning(f"{service_type.value} service unavailable")

        logger.error(f"No compatible service on {self._device.name or self._device.address}")
        return NegotiationResult.NO_COMPATIBLE_SERVICE

    async def _subscribe(self, client: Any, service_type: ServiceType) -> NegotiationResult:
        try:
            service = client.services.get_service(SERVICE_UUIDS[service_type])
        except BleakError as e:
            # Raised when the device exposes the service more than once
            logger.warning(f"{service_type.value} service lookup failed: {e}")
            return NegotiationResult.SERVICE_UNAVAILABLE
        if service is None:
            return NegotiationResult.SERVICE_UNAVAILABLE

        self._state = NegotiatorState.SERVICE_SELECTED
        characteristics = [
            char for char in service.characteristics if "notify" in char.properties
        ]
        if not characteristics:
            return NegotiationResult.SERVICE_UNAVAILABLE

        self._csc_previous = None
        subscribed = []
        try:
            for char in characteristics:
                handler = self._make_handler(service_type, char.uuid.lower())
                await client.start_notify(char, handler)
                subscribed.append(char)
        except (BleakError, OSError) as e:
            logger.warning(f"Subscribe to {service_type.value} failed: {e}")
            for char in subscribed:
                try:
                    await client.stop_notify(char)
                except (BleakError, OSError):
                    pass
            return NegotiationResult.SERVICE_UNAVAILABLE

        self._subscribed = subscribed
        return NegotiationResult.SUCCESS

    async def disconnect(self) -> None:
        """Disconnect from device, ending any session that depends on it first."""
        client = self._client
        if client is None:
            return

        self._release(self._clock())
        try:
            logger.info("Disconnecting...")
            await client.disconnect()
            logger.info("Disconnected")
        except Exception as e:
            logger.error(f"Disconnect failed: {e}")

    def _release(self, at: datetime) -> None:
        """Report the lost binding, then drop the device handle. Runs once per connection."""
        binding = self._binding
        self._binding = None
        self._state = NegotiatorState.DISCONNECTED
        if binding is not None and self._on_disconnect:
            try:
                self._on_disconnect(binding, at)
            except Exception as e:
                logger.error(f"Disconnect callback error: {e}")
        self._client = None
        self._subscribed = []
        self._csc_previous = None

    def _on_device_disconnect(self, client: Any) -> None:
        """Handle a spontaneous disconnect reported by the BLE stack.

        Args:
            client: The client that disconnected
        """
        if client is not self._client:
            return
        logger.warning("Device disconnected")
        self._release(self._clock())

    # ========== Notifications ==========

    def _make_handler(
        self, service_type: ServiceType, char_uuid: str
    ) -> Callable[[Any, bytearray], None]:
        measurement_uuid = MEASUREMENT_UUIDS[service_type]
        if measurement_uuid is not None and char_uuid != measurement_uuid:

            def ignore(_sender: Any, data: bytearray) -> None:
                self.notifications_dropped += 1
                logger.debug(f"Ignoring {len(data)}-byte notification from {char_uuid}")

            return ignore

        def handler(_sender: Any, data: bytearray) -> None:
            self._on_notification(service_type, data)

        return handler

    def _on_notification(self, service_type: ServiceType, data: bytearray) -> None:
        """Decode one payload and forward its readings.

        Called on the event loop for every notification - must not block.
        """
        result = decode(
            service_type,
            bytes(data),
            previous=self._csc_previous,
            timestamp=self._clock(),
            wheel_circumference_m=self.settings.wheel_circumference_m,
        )
        if result.measurement is not None:
            self._csc_previous = result.measurement
        if not result.ok:
            self.notifications_dropped += 1
            logger.debug(
                f"Dropped {len(data)}-byte {service_type.value} notification: "
                f"{result.error.name if result.error else 'unknown'}"
            )
            return

        self.notifications_received += 1
        for reading in result.readings:
            self._last_values[reading.metric] = reading.value
            if self._on_reading:
                try:
                    self._on_reading(reading)
                except Exception as e:
                    logger.error(f"Reading callback error: {e}")

    def get_status(self) -> dict:
        """Get connection state and last known values without waiting for updates."""
        return {
            "state": self._state.value,
            "device": self._binding.name if self._binding else None,
            "service": self._binding.service_type.value if self._binding else None,
            "received": self.notifications_received,
            "dropped": self.notifications_dropped,
            "values": dict(self._last_values),
        }
