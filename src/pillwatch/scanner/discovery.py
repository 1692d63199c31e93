"""Live view of nearby pill-box beacons.

The discovery service sits between a scanner backend and its consumers
(the adherence monitor and the beacon-assignment API). It filters weak
advertisements, decodes the lid sensor byte and keeps one observation
per beacon identity.
"""

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from pillwatch.scanner.base import Advertisement, BaseScanner, RadioUnavailableError

logger = logging.getLogger(__name__)

UNKNOWN_BEACON_NAME = "Unknown Beacon"


class ScannerStatus(enum.StrEnum):
    idle = "idle"
    scanning = "scanning"
    unavailable = "unavailable"


def normalize_beacon_id(beacon_id: str) -> str:
    """Normalize a beacon identity (MAC address or UUID) to upper case."""
    return beacon_id.strip().upper()


def decode_sensor_byte(payload: bytes | None) -> int | None:
    """First byte of the vendor payload, or None if there is none."""
    if not payload:
        return None
    return payload[0]


@dataclass
class BeaconObservation:
    """Latest qualifying advertisement from one beacon."""

    beacon_id: str
    name: str
    rssi: int
    sensor_byte: int | None
    last_seen: datetime

    @property
    def label(self) -> str:
        """Display label: the name, or a short id for unnamed beacons."""
        if self.name == UNKNOWN_BEACON_NAME:
            return self.beacon_id[:8]
        return self.name

    def is_open(self, threshold: int) -> bool:
        """Lid is open when the sensor byte exceeds the threshold."""
        return (self.sensor_byte or 0) > threshold


class DiscoveryService:
    """Maintains the deduplicated set of observed beacons."""

    def __init__(self, scanner: BaseScanner | None, rssi_threshold: int = -55) -> None:
        self.scanner = scanner
        self.rssi_threshold = rssi_threshold
        self.status = ScannerStatus.idle
        self._observed: dict[str, BeaconObservation] = {}
        self._observers: list[Callable[[BeaconObservation], None]] = []
        if scanner is not None:
            scanner.on_advertisement(self.handle_advertisement)

    def on_update(self, callback: Callable[[BeaconObservation], None]) -> None:
        """Register an observer called after every accepted advertisement."""
        self._observers.append(callback)

    async def start_scanning(self) -> None:
        """Clear observations and start the backend.

        An unavailable radio leaves the service in the ``unavailable``
        state instead of raising; callers poll ``status`` to recover.
        """
        self._observed.clear()
        if self.scanner is None:
            logger.info("No scanner backend configured")
            return
        if self.status == ScannerStatus.scanning:
            await self.scanner.stop()
        try:
            await self.scanner.start()
        except RadioUnavailableError as e:
            self.status = ScannerStatus.unavailable
            logger.warning("Bluetooth radio unavailable: %s", e)
            return
        self.status = ScannerStatus.scanning
        logger.info("Beacon scanning started")

    async def stop_scanning(self) -> None:
        """Stop the backend. Observations are kept."""
        if self.scanner is not None and self.status == ScannerStatus.scanning:
            await self.scanner.stop()
            logger.info("Beacon scanning stopped")
        self.status = ScannerStatus.idle

    def handle_advertisement(self, adv: Advertisement) -> BeaconObservation | None:
        """Upsert an observation from an advertisement; None if rejected."""
        if adv.rssi < self.rssi_threshold:
            return None

        observation = BeaconObservation(
            beacon_id=normalize_beacon_id(adv.beacon_id),
            name=adv.name or UNKNOWN_BEACON_NAME,
            rssi=adv.rssi,
            sensor_byte=decode_sensor_byte(adv.manufacturer_data),
            last_seen=adv.timestamp,
        )
        # dict assignment keeps the original position for known beacons
        self._observed[observation.beacon_id] = observation
        logger.debug(
            "Beacon %s rssi=%d sensor=%s",
            observation.beacon_id,
            observation.rssi,
            observation.sensor_byte,
        )

        for cb in self._observers:
            try:
                cb(observation)
            except Exception:
                logger.exception("Beacon observer failed for %s", observation.beacon_id)
        return observation

    def observations(self) -> list[BeaconObservation]:
        return list(self._observed.values())

    def get(self, beacon_id: str) -> BeaconObservation | None:
        return self._observed.get(normalize_beacon_id(beacon_id))
