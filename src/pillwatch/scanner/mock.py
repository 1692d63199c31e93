"""Mock scanner for development and testing.

Produces fake pill-box advertisements on a timer: a few nearby boxes
whose lids are occasionally opened, plus a distant beacon that stays
below the signal cutoff.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from datetime import UTC, datetime

from pillwatch.scanner.base import Advertisement, BaseScanner

logger = logging.getLogger(__name__)

# (identity, name, base rssi)
_PILL_BOXES = [
    ("C3:1F:6A:00:00:01", "PillBox-1", -40),
    ("C3:1F:6A:00:00:02", "PillBox-2", -44),
    ("C3:1F:6A:00:00:03", None, -48),
]

_DISTANT_BEACON = ("E8:9D:12:77:00:09", "Kitchen-Tag", -80)

_SENSOR_CLOSED = 20
_SENSOR_OPEN = 220


class MockScanner(BaseScanner):
    """Generates fake beacon advertisements for development."""

    def __init__(self, poll_interval: float = 2, open_probability: float = 0.1) -> None:
        self.poll_interval = poll_interval
        self.open_probability = open_probability
        self._callbacks: list[Callable[[Advertisement], None]] = []
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        logger.info("Starting mock scanner (interval=%ss)", self.poll_interval)
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        logger.info("Stopping mock scanner")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def on_advertisement(self, callback: Callable[[Advertisement], None]) -> None:
        self._callbacks.append(callback)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                now = datetime.now(UTC)
                for event in self._generate_events(now):
                    for cb in self._callbacks:
                        cb(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Mock scanner error")

            await asyncio.sleep(self.poll_interval)

    def _generate_events(self, now: datetime) -> list[Advertisement]:
        events: list[Advertisement] = []

        for beacon_id, name, base_rssi in _PILL_BOXES:
            is_open = random.random() < self.open_probability
            sensor = _SENSOR_OPEN if is_open else _SENSOR_CLOSED
            events.append(
                Advertisement(
                    beacon_id=beacon_id,
                    name=name,
                    rssi=base_rssi + random.randint(-4, 4),
                    manufacturer_data=bytes([sensor, 0x00]),
                    timestamp=now,
                    source="mock",
                )
            )

        beacon_id, name, base_rssi = _DISTANT_BEACON
        events.append(
            Advertisement(
                beacon_id=beacon_id,
                name=name,
                rssi=base_rssi + random.randint(-5, 5),
                manufacturer_data=None,
                timestamp=now,
                source="mock",
            )
        )

        return events
