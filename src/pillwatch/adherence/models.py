"""Dose status, alert and alert history models."""

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlmodel import Field, SQLModel

from pillwatch.schedule.models import MedicationEntry


class DoseStatus(enum.StrEnum):
    pending = "pending"
    due_soon = "due_soon"
    overdue = "overdue"
    resolved = "resolved"
    unknown = "unknown"


class AlertLevel(enum.StrEnum):
    info = "info"
    urgent = "urgent"
    warning = "warning"


@dataclass
class Alert:
    """The one in-app alert currently shown to the user."""

    message: str
    level: AlertLevel
    box_number: int
    entry_id: str
    raised_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class DoseReport:
    """Evaluated state of one medication entry."""

    entry: MedicationEntry
    status: DoseStatus
    scheduled_at: datetime
    cover_open: bool | None  # None when the box's beacon isn't in range
    last_known: DoseStatus | None = None  # status from before the beacon went out of range


class AlertLog(SQLModel, table=True):
    """Time-series log of raised alerts."""

    id: int | None = Field(default=None, primary_key=True)
    entry_id: str = Field(index=True)
    box_number: int
    level: AlertLevel
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
