"""Reminder triggers and their delivery to the notification surface.

Triggers are keyed by a deterministic id. Registering a trigger under an
id that is already pending replaces it, so re-scheduling an edited entry
never leaves a stale reminder behind.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any

import httpx

from pillwatch.schedule.models import MedicationEntry

logger = logging.getLogger(__name__)

REMINDER_TITLE = "Medication Reminder"
WRONG_BOX_TITLE = "Wrong Box Alert"


def wrong_box_trigger_id(entry_id: str) -> str:
    return f"wrongBox-{entry_id}"


def next_occurrence(medication_time: time, now: datetime) -> datetime:
    """The next wall-clock datetime at medication_time strictly after now."""
    candidate = datetime.combine(now.date(), medication_time)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


@dataclass
class Trigger:
    """A pending notification."""

    trigger_id: str
    entry_id: str
    title: str
    body: str
    fire_at: datetime  # local wall-clock time
    repeats_daily: bool = False


class NotificationScheduler:
    """Registers, cancels and delivers reminder triggers."""

    def __init__(
        self,
        webhook_url: str | None = None,
        daily_reminders: bool = True,
        wrong_box_delay_seconds: int = 1,
        dispatch_interval: float = 1.0,
    ) -> None:
        self.webhook_url = webhook_url
        self.daily_reminders = daily_reminders
        self.wrong_box_delay_seconds = wrong_box_delay_seconds
        self.dispatch_interval = dispatch_interval
        self._pending: dict[str, Trigger] = {}
        self._running = False
        self._task: asyncio.Task[None] | None = None

    # --- Registration ---

    def register(self, trigger: Trigger) -> None:
        """Add a trigger, replacing any pending one with the same id."""
        replaced = trigger.trigger_id in self._pending
        self._pending[trigger.trigger_id] = trigger
        logger.info(
            "%s notification %s for %s",
            "Rescheduled" if replaced else "Scheduled",
            trigger.trigger_id,
            trigger.fire_at.isoformat(timespec="minutes"),
        )

    def schedule_reminder(self, entry: MedicationEntry, now: datetime | None = None) -> Trigger:
        """Register the daily reminder for an entry under the entry's id."""
        now = now or datetime.now()
        trigger = Trigger(
            trigger_id=entry.id,
            entry_id=entry.id,
            title=REMINDER_TITLE,
            body=f"Time to take your medication from Box {entry.box_number}.",
            fire_at=next_occurrence(entry.medication_time, now),
            repeats_daily=self.daily_reminders,
        )
        self.register(trigger)
        return trigger

    def schedule_wrong_box_alert(
        self, entry: MedicationEntry, opened_box: int, now: datetime | None = None
    ) -> Trigger:
        """Register a near-immediate one-shot alert about a wrong box."""
        now = now or datetime.now()
        trigger = Trigger(
            trigger_id=wrong_box_trigger_id(entry.id),
            entry_id=entry.id,
            title=WRONG_BOX_TITLE,
            body=(
                f"You opened Box {opened_box}, but your medication is in Box {entry.box_number}."
            ),
            fire_at=now + timedelta(seconds=self.wrong_box_delay_seconds),
        )
        self.register(trigger)
        return trigger

    def cancel(self, trigger_id: str) -> bool:
        trigger = self._pending.pop(trigger_id, None)
        if trigger is None:
            return False
        logger.info("Cancelled notification %s", trigger_id)
        return True

    def cancel_entry(self, entry_id: str) -> None:
        """Drop both the reminder and any wrong-box alert for an entry."""
        self.cancel(entry_id)
        self.cancel(wrong_box_trigger_id(entry_id))

    def clear(self) -> None:
        self._pending.clear()

    def get(self, trigger_id: str) -> Trigger | None:
        return self._pending.get(trigger_id)

    def pending(self) -> list[Trigger]:
        return sorted(self._pending.values(), key=lambda t: t.fire_at)

    # --- Delivery ---

    def dispatch_due(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Deliver every trigger whose fire time has come.

        One-shot triggers are dropped after delivery; daily ones are
        re-armed for their next occurrence. Delivery failures are logged
        and not retried.
        """
        now = now or datetime.now()
        due = [t for t in self.pending() if t.fire_at <= now]
        results = []
        for trigger in due:
            results.append(self._deliver(trigger, now))
            if trigger.repeats_daily:
                trigger.fire_at = next_occurrence(trigger.fire_at.time(), now)
            else:
                self._pending.pop(trigger.trigger_id, None)
        return results

    def _deliver(self, trigger: Trigger, now: datetime) -> dict[str, Any]:
        payload = {
            "trigger_id": trigger.trigger_id,
            "title": trigger.title,
            "body": trigger.body,
            "fired_at": now.isoformat(),
        }
        if not self.webhook_url:
            logger.info("Notification %s: %s: %s", trigger.trigger_id, trigger.title, trigger.body)
            return {"payload": payload, "url": None, "status_code": None, "success": True}

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(self.webhook_url, json=payload)
        except Exception as e:
            logger.error(
                "Notification dispatch error: %s → %s: %s",
                trigger.trigger_id,
                self.webhook_url,
                e,
            )
            return {
                "payload": payload,
                "url": self.webhook_url,
                "status_code": None,
                "success": False,
                "error": str(e),
            }

        if response.is_success:
            logger.info(
                "Notification delivered: %s → %s (HTTP %d)",
                trigger.trigger_id,
                self.webhook_url,
                response.status_code,
            )
        else:
            logger.warning(
                "Notification failed: %s → %s (HTTP %d)",
                trigger.trigger_id,
                self.webhook_url,
                response.status_code,
            )
        return {
            "payload": payload,
            "url": self.webhook_url,
            "status_code": response.status_code,
            "success": response.is_success,
        }

    # --- Lifecycle ---

    async def start(self) -> None:
        logger.info("Starting notification dispatcher (interval=%ss)", self.dispatch_interval)
        self._running = True
        self._task = asyncio.create_task(self._dispatch_loop())

    async def stop(self) -> None:
        logger.info("Stopping notification dispatcher")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _dispatch_loop(self) -> None:
        while self._running:
            try:
                self.dispatch_due()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Notification dispatch loop error")

            await asyncio.sleep(self.dispatch_interval)
