"""Tests for the beacon discovery service."""

from collections.abc import Callable

import pytest
from conftest import make_advertisement

from pillwatch.scanner.base import Advertisement, BaseScanner, RadioUnavailableError
from pillwatch.scanner.discovery import (
    UNKNOWN_BEACON_NAME,
    BeaconObservation,
    DiscoveryService,
    ScannerStatus,
    decode_sensor_byte,
)


class FakeScanner(BaseScanner):
    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.started = 0
        self.stopped = 0
        self.callbacks: list[Callable[[Advertisement], None]] = []

    async def start(self) -> None:
        if not self.available:
            raise RadioUnavailableError("Bluetooth is powered off")
        self.started += 1

    async def stop(self) -> None:
        self.stopped += 1

    def on_advertisement(self, callback: Callable[[Advertisement], None]) -> None:
        self.callbacks.append(callback)


class TestSignalThreshold:
    def test_boundary_is_kept(self):
        service = DiscoveryService(None, rssi_threshold=-55)
        assert service.handle_advertisement(make_advertisement(rssi=-55)) is not None
        assert len(service.observations()) == 1

    def test_below_boundary_is_dropped(self):
        service = DiscoveryService(None, rssi_threshold=-55)
        assert service.handle_advertisement(make_advertisement(rssi=-56)) is None
        assert service.observations() == []

    def test_weak_update_does_not_replace_strong_observation(self):
        service = DiscoveryService(None)
        service.handle_advertisement(make_advertisement(rssi=-40, sensor=200))
        service.handle_advertisement(make_advertisement(rssi=-70, sensor=10))
        assert service.get("C3:1F:6A:00:00:01").sensor_byte == 200


class TestUpsert:
    def test_last_write_wins_and_keeps_position(self):
        service = DiscoveryService(None)
        service.handle_advertisement(make_advertisement(beacon_id="AA:00:00:00:00:01", sensor=10))
        service.handle_advertisement(make_advertisement(beacon_id="AA:00:00:00:00:02", sensor=10))
        service.handle_advertisement(make_advertisement(beacon_id="aa:00:00:00:00:01", sensor=250))

        observations = service.observations()
        assert [o.beacon_id for o in observations] == ["AA:00:00:00:00:01", "AA:00:00:00:00:02"]
        assert observations[0].sensor_byte == 250

    def test_unnamed_beacon_gets_sentinel_and_short_label(self):
        service = DiscoveryService(None)
        obs = service.handle_advertisement(
            make_advertisement(beacon_id="5F1C9A2B-0000-4000-8000-00000000ABCD", name=None)
        )
        assert obs.name == UNKNOWN_BEACON_NAME
        assert obs.label == "5F1C9A2B"

    def test_named_beacon_label(self):
        service = DiscoveryService(None)
        obs = service.handle_advertisement(make_advertisement(name="PillBox-3"))
        assert obs.label == "PillBox-3"

    def test_observers_notified(self):
        service = DiscoveryService(None)
        seen: list[BeaconObservation] = []
        service.on_update(seen.append)
        service.handle_advertisement(make_advertisement())
        service.handle_advertisement(make_advertisement(rssi=-90))
        assert len(seen) == 1

    def test_failing_observer_does_not_block_others(self):
        service = DiscoveryService(None)
        seen: list[BeaconObservation] = []

        def _broken(_obs: BeaconObservation) -> None:
            raise RuntimeError("boom")

        service.on_update(_broken)
        service.on_update(seen.append)
        service.handle_advertisement(make_advertisement())
        assert len(seen) == 1


class TestSensorByte:
    def test_first_byte_of_payload(self):
        assert decode_sensor_byte(bytes([0x81, 0x01, 0x02])) == 129

    def test_missing_payload(self):
        assert decode_sensor_byte(None) is None
        assert decode_sensor_byte(b"") is None

    def test_open_threshold_boundary(self):
        service = DiscoveryService(None)
        closed = service.handle_advertisement(make_advertisement(beacon_id="A1", sensor=128))
        opened = service.handle_advertisement(make_advertisement(beacon_id="A2", sensor=129))
        assert closed.is_open(128) is False
        assert opened.is_open(128) is True

    def test_missing_sensor_counts_as_closed(self):
        service = DiscoveryService(None)
        obs = service.handle_advertisement(make_advertisement(sensor=None))
        assert obs.sensor_byte is None
        assert obs.is_open(128) is False


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_clears_observations(self):
        scanner = FakeScanner()
        service = DiscoveryService(scanner)
        service.handle_advertisement(make_advertisement())

        await service.start_scanning()
        assert service.status == ScannerStatus.scanning
        assert service.observations() == []
        assert scanner.started == 1

    @pytest.mark.asyncio
    async def test_stop_keeps_observations(self):
        scanner = FakeScanner()
        service = DiscoveryService(scanner)
        await service.start_scanning()
        service.handle_advertisement(make_advertisement())

        await service.stop_scanning()
        assert service.status == ScannerStatus.idle
        assert scanner.stopped == 1
        assert len(service.observations()) == 1

    @pytest.mark.asyncio
    async def test_restart_stops_backend_first(self):
        scanner = FakeScanner()
        service = DiscoveryService(scanner)
        await service.start_scanning()
        await service.start_scanning()
        assert scanner.stopped == 1
        assert scanner.started == 2

    @pytest.mark.asyncio
    async def test_radio_unavailable_sets_status(self):
        service = DiscoveryService(FakeScanner(available=False))
        await service.start_scanning()
        assert service.status == ScannerStatus.unavailable

        # stopping an unavailable scanner is a no-op
        await service.stop_scanning()
        assert service.status == ScannerStatus.idle

    @pytest.mark.asyncio
    async def test_no_backend(self):
        service = DiscoveryService(None)
        await service.start_scanning()
        assert service.status == ScannerStatus.idle

    def test_scanner_callback_registered(self):
        scanner = FakeScanner()
        service = DiscoveryService(scanner)
        scanner.callbacks[0](make_advertisement())
        assert len(service.observations()) == 1
