"""Adherence monitor: dose classification and alert escalation.

Every tick, each medication entry is matched to its box's beacon and
classified from the time since its scheduled minute and the lid sensor:

    pending   -> before the scheduled time
    due_soon  -> lid closed, less than the due window past the time
    overdue   -> lid closed, the due window or more past the time
    resolved  -> lid open at or after the scheduled time
    unknown   -> the box has no beacon in range (the report carries the
                 last status seen while it was, as last_known)

Alerts fire only when an entry enters due_soon or overdue, not on every
tick it stays there. While a dose is due, opening a mapped box whose own
dose time hasn't come yet (or that has no dose) raises a wrong-box alert
and a wrong-box notification.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlmodel import Session

from pillwatch.adherence.history import record_alert
from pillwatch.adherence.models import Alert, AlertLevel, DoseReport, DoseStatus
from pillwatch.boxes.store import list_mappings
from pillwatch.notify.scheduler import NotificationScheduler
from pillwatch.scanner.discovery import BeaconObservation, DiscoveryService
from pillwatch.schedule.models import MedicationEntry
from pillwatch.schedule.store import list_medications

logger = logging.getLogger(__name__)

_DUE = (DoseStatus.due_soon, DoseStatus.overdue)
_CURRENT = (*_DUE, DoseStatus.resolved)


def classify(
    now: datetime,
    scheduled_at: datetime,
    observation: BeaconObservation | None,
    sensor_open_threshold: int = 128,
    due_window_seconds: int = 60,
) -> DoseStatus:
    """Classify one dose from the clock and the box's latest observation."""
    if observation is None:
        return DoseStatus.unknown
    if now < scheduled_at:
        return DoseStatus.pending
    if observation.is_open(sensor_open_threshold):
        return DoseStatus.resolved
    if now - scheduled_at < timedelta(seconds=due_window_seconds):
        return DoseStatus.due_soon
    return DoseStatus.overdue


def due_message(box_number: int) -> str:
    return f"Time for medication! Please take it from Box {box_number}."


def overdue_message(box_number: int) -> str:
    return f"You are late! Please take it from Box {box_number}."


def wrong_box_message(opened_box: int, box_number: int) -> str:
    return f"You opened Box {opened_box}, but your medication is in Box {box_number}."


class AdherenceMonitor:
    """Periodically evaluates the schedule against live beacon state."""

    def __init__(
        self,
        discovery: DiscoveryService,
        notifier: NotificationScheduler,
        session_factory: Callable[[], Session],
        sensor_open_threshold: int = 128,
        due_window_seconds: int = 60,
        evaluation_interval: float = 60,
    ) -> None:
        self.discovery = discovery
        self.notifier = notifier
        self.session_factory = session_factory
        self.sensor_open_threshold = sensor_open_threshold
        self.due_window_seconds = due_window_seconds
        self.evaluation_interval = evaluation_interval
        self.alert: Alert | None = None
        self._last_status: dict[str, DoseStatus] = {}
        self._last_known: dict[str, DoseStatus] = {}
        self._reported_wrong: dict[str, set[int]] = {}
        self._running = False
        self._task: asyncio.Task[None] | None = None

    # --- Evaluation ---

    def _box_observations(self, session: Session) -> dict[int, BeaconObservation]:
        """Live observation per mapped box, for beacons currently in range."""
        result: dict[int, BeaconObservation] = {}
        for mapping in list_mappings(session):
            observation = self.discovery.get(mapping.beacon_id)
            if observation is not None:
                result[mapping.box_number] = observation
        return result

    def _report(
        self,
        entry: MedicationEntry,
        observation: BeaconObservation | None,
        now: datetime,
    ) -> DoseReport:
        scheduled_at = datetime.combine(now.date(), entry.medication_time)
        status = classify(
            now,
            scheduled_at,
            observation,
            self.sensor_open_threshold,
            self.due_window_seconds,
        )
        cover_open = None
        if observation is not None:
            cover_open = observation.is_open(self.sensor_open_threshold)
        return DoseReport(
            entry=entry, status=status, scheduled_at=scheduled_at, cover_open=cover_open
        )

    def _evaluate(
        self, session: Session, now: datetime
    ) -> tuple[list[DoseReport], dict[int, BeaconObservation]]:
        boxes = self._box_observations(session)
        reports = [self._report(e, boxes.get(e.box_number), now) for e in list_medications(session)]
        for report in reports:
            if report.status == DoseStatus.unknown:
                report.last_known = self._last_known.get(report.entry.id)
        return reports, boxes

    def evaluate(self, session: Session, now: datetime | None = None) -> list[DoseReport]:
        """Classify every entry without raising alerts."""
        reports, _ = self._evaluate(session, now or datetime.now())
        return reports

    def check(self, session: Session, now: datetime | None = None) -> list[Alert]:
        """Evaluate all entries and raise alerts on state changes.

        Returns the alerts raised by this call, oldest first.
        """
        now = now or datetime.now()
        reports, boxes = self._evaluate(session, now)
        raised: list[Alert] = []

        live_ids = {r.entry.id for r in reports}
        for entry_id in set(self._last_status) - live_ids:
            self.forget(entry_id)

        for report in reports:
            entry = report.entry
            previous = self._last_status.get(entry.id)
            self._last_status[entry.id] = report.status
            if report.status != DoseStatus.unknown:
                self._last_known[entry.id] = report.status
            if report.status == previous:
                continue
            logger.debug("Box %d: %s -> %s", entry.box_number, previous, report.status)
            box = entry.box_number
            if report.status == DoseStatus.due_soon:
                alert = Alert(due_message(box), AlertLevel.info, box, entry.id)
            elif report.status == DoseStatus.overdue:
                alert = Alert(overdue_message(box), AlertLevel.urgent, box, entry.id)
            else:
                continue
            raised.append(self.raise_alert(session, alert))

        raised.extend(self._check_wrong_boxes(session, reports, boxes, now))
        return raised

    def _check_wrong_boxes(
        self,
        session: Session,
        reports: list[DoseReport],
        boxes: dict[int, BeaconObservation],
        now: datetime,
    ) -> list[Alert]:
        open_boxes = {
            box for box, obs in boxes.items() if obs.is_open(self.sensor_open_threshold)
        }
        # a box whose own dose time has come is the right box for that dose
        current_boxes = {r.entry.box_number for r in reports if r.status in _CURRENT}
        raised: list[Alert] = []

        for report in reports:
            entry = report.entry
            if report.status not in _DUE:
                self._reported_wrong.pop(entry.id, None)
                continue
            wrong = open_boxes - current_boxes
            already = self._reported_wrong.get(entry.id, set())
            for opened_box in sorted(wrong - already):
                logger.info(
                    "Wrong box opened: Box %d instead of Box %d", opened_box, entry.box_number
                )
                alert = Alert(
                    wrong_box_message(opened_box, entry.box_number),
                    AlertLevel.warning,
                    entry.box_number,
                    entry.id,
                )
                raised.append(self.raise_alert(session, alert))
                self.notifier.schedule_wrong_box_alert(entry, opened_box, now=now)
            self._reported_wrong[entry.id] = wrong
        return raised

    # --- Alert slot ---

    def raise_alert(self, session: Session, alert: Alert) -> Alert:
        """Show an alert, replacing any unacknowledged one, and log it."""
        if self.alert is not None:
            logger.debug("Replacing unacknowledged alert: %s", self.alert.message)
        self.alert = alert
        logger.info("Alert (%s): %s", alert.level, alert.message)
        record_alert(session, alert)
        return alert

    def acknowledge(self) -> Alert | None:
        """Clear the current alert and return it."""
        alert, self.alert = self.alert, None
        return alert

    def forget(self, entry_id: str) -> None:
        """Drop edge-detection state for an entry (after edit or delete)."""
        self._last_status.pop(entry_id, None)
        self._last_known.pop(entry_id, None)
        self._reported_wrong.pop(entry_id, None)

    def reset(self) -> None:
        """Drop all per-entry state (after the schedule is replaced)."""
        self._last_status.clear()
        self._last_known.clear()
        self._reported_wrong.clear()

    # --- Lifecycle ---

    def tick(self, now: datetime | None = None) -> list[Alert]:
        with self.session_factory() as session:
            return self.check(session, now)

    async def start(self) -> None:
        logger.info("Starting adherence monitor (interval=%ss)", self.evaluation_interval)
        self._running = True
        self._task = asyncio.create_task(self._evaluation_loop())

    async def stop(self) -> None:
        logger.info("Stopping adherence monitor")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _evaluation_loop(self) -> None:
        while self._running:
            try:
                self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Adherence evaluation error")

            await asyncio.sleep(self.evaluation_interval)
