"""Medication schedule model."""

import uuid
from datetime import UTC, datetime, time

from sqlmodel import Field, SQLModel


class MedicationEntry(SQLModel, table=True):
    """A daily dose: time of day plus the box holding the medication."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    medication_time: time  # hour and minute; seconds are always zero
    box_number: int = Field(unique=True, index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
