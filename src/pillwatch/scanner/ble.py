"""BLE beacon scanner using bleak.

Scans continuously with duplicate advertisements enabled: the lid sensor
byte changes while the beacon identity stays the same, so every broadcast
matters, not just the first one.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from pillwatch.scanner.base import Advertisement, BaseScanner, RadioUnavailableError

logger = logging.getLogger(__name__)


def first_manufacturer_payload(advertisement: AdvertisementData) -> bytes | None:
    """Return the first manufacturer-specific payload, or None if absent."""
    for payload in advertisement.manufacturer_data.values():
        return bytes(payload)
    return None


class BleScanner(BaseScanner):
    """Receives beacon advertisements from the local Bluetooth adapter."""

    def __init__(self) -> None:
        self._callbacks: list[Callable[[Advertisement], None]] = []
        self._scanner: BleakScanner | None = None

    async def start(self) -> None:
        logger.info("Starting BLE scanner")
        try:
            scanner = BleakScanner(
                detection_callback=self._handle_detection,
                bluez={"filters": {"DuplicateData": True}},
            )
            await scanner.start()
        except (BleakError, OSError) as e:
            # OSError: no adapter or no D-Bus socket on this host
            raise RadioUnavailableError(str(e) or type(e).__name__) from e
        self._scanner = scanner

    async def stop(self) -> None:
        if self._scanner is None:
            return
        logger.info("Stopping BLE scanner")
        try:
            await self._scanner.stop()
        except BleakError:
            logger.warning("BLE scanner did not stop cleanly", exc_info=True)
        self._scanner = None

    def on_advertisement(self, callback: Callable[[Advertisement], None]) -> None:
        self._callbacks.append(callback)

    def _handle_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        event = Advertisement(
            beacon_id=device.address,
            name=device.name or advertisement.local_name,
            rssi=advertisement.rssi,
            manufacturer_data=first_manufacturer_payload(advertisement),
            timestamp=datetime.now(UTC),
            source="ble",
        )
        for cb in self._callbacks:
            cb(event)
