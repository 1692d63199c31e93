"""Base interface for beacon radio backends."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime


class RadioUnavailableError(RuntimeError):
    """The Bluetooth adapter is missing or powered off."""


@dataclass
class Advertisement:
    """A single received BLE advertisement."""

    beacon_id: str
    name: str | None
    rssi: int  # dBm (negative, e.g. -45)
    manufacturer_data: bytes | None  # vendor payload without the company id
    timestamp: datetime
    source: str  # "ble" or "mock"


class BaseScanner(ABC):
    """Abstract base for all beacon capture backends."""

    @abstractmethod
    async def start(self) -> None:
        """Start scanning. Raises RadioUnavailableError if the radio is off."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop scanning."""

    @abstractmethod
    def on_advertisement(self, callback: Callable[[Advertisement], None]) -> None:
        """Register a callback for received advertisements."""
