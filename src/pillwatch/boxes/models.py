"""Beacon-to-box mapping model."""

from datetime import UTC, datetime

from sqlmodel import Field, SQLModel


class BeaconMapping(SQLModel, table=True):
    """Links a beacon identity to one numbered medication box."""

    beacon_id: str = Field(primary_key=True)
    box_number: int = Field(unique=True, index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
