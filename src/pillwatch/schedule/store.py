"""Medication entry CRUD and box availability."""

import logging
from collections.abc import Iterable
from datetime import time

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from pillwatch.boxes.store import BoxConflictError, validate_box_number
from pillwatch.database import PersistenceError
from pillwatch.schedule.models import MedicationEntry

logger = logging.getLogger(__name__)


def normalize_time(value: time) -> time:
    """Keep only hour and minute."""
    return value.replace(second=0, microsecond=0, tzinfo=None)


def _commit(session: Session) -> None:
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.warning("Medication entry rejected by unique index: %s", e.orig)
        raise BoxConflictError("Box already has a medication scheduled") from e
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Failed to save medication schedule")
        raise PersistenceError("Failed to save medication schedule") from e


def list_medications(session: Session) -> list[MedicationEntry]:
    """All entries ordered by time of day; empty if the store can't be read."""
    try:
        stmt = select(MedicationEntry).order_by(
            MedicationEntry.medication_time, MedicationEntry.box_number
        )
        return list(session.exec(stmt).all())
    except SQLAlchemyError:
        logger.exception("Failed to load medication schedule")
        return []


def get_medication(session: Session, entry_id: str) -> MedicationEntry | None:
    return session.get(MedicationEntry, entry_id)


def _used_boxes(session: Session, excluding_entry_id: str | None = None) -> set[int]:
    return {e.box_number for e in list_medications(session) if e.id != excluding_entry_id}


def available_boxes(
    session: Session,
    box_count: int = 10,
    excluding_entry_id: str | None = None,
    staged: Iterable[int] = (),
) -> list[int]:
    """Box choices for a new or edited entry.

    Boxes used by other saved entries or by other staged (unsaved) picks
    are left out. The excluded entry's own box is always offered so that
    an edit never starts from an invalid choice.
    """
    used = _used_boxes(session, excluding_entry_id) | set(staged)
    available = {n for n in range(1, box_count + 1) if n not in used}
    if excluding_entry_id is not None:
        entry = get_medication(session, excluding_entry_id)
        if entry is not None:
            available.add(entry.box_number)
    return sorted(available)


def add_medications(
    session: Session, items: Iterable[tuple[time, int]], box_count: int = 10
) -> list[MedicationEntry]:
    """Add several entries at once.

    The whole batch is checked before anything is written.

    Raises:
        ValueError: If a box number is outside 1..box_count.
        BoxConflictError: If a box is already used or repeated within the batch.
    """
    batch = [(normalize_time(t), box) for t, box in items]
    used = _used_boxes(session)
    for _, box in batch:
        validate_box_number(box, box_count)
        if box in used:
            raise BoxConflictError(f"Box {box} already has a medication scheduled")
        used.add(box)

    entries = [MedicationEntry(medication_time=t, box_number=box) for t, box in batch]
    for entry in entries:
        session.add(entry)
    _commit(session)
    for entry in entries:
        session.refresh(entry)
        logger.info(
            "Added medication %s at %s in Box %d",
            entry.id,
            entry.medication_time.strftime("%H:%M"),
            entry.box_number,
        )
    return entries


def add_medication(
    session: Session, medication_time: time, box_number: int, box_count: int = 10
) -> MedicationEntry:
    """Add a single entry. See add_medications for the errors raised."""
    return add_medications(session, [(medication_time, box_number)], box_count)[0]


def update_medication(
    session: Session,
    entry_id: str,
    medication_time: time | None = None,
    box_number: int | None = None,
    box_count: int = 10,
) -> MedicationEntry | None:
    """Change time and/or box of an entry. Return None if not found."""
    entry = get_medication(session, entry_id)
    if entry is None:
        return None

    if box_number is not None and box_number != entry.box_number:
        validate_box_number(box_number, box_count)
        if box_number in _used_boxes(session, excluding_entry_id=entry_id):
            raise BoxConflictError(f"Box {box_number} already has a medication scheduled")
        entry.box_number = box_number
    if medication_time is not None:
        entry.medication_time = normalize_time(medication_time)

    _commit(session)
    session.refresh(entry)
    logger.info(
        "Updated medication %s: %s in Box %d",
        entry.id,
        entry.medication_time.strftime("%H:%M"),
        entry.box_number,
    )
    return entry


def delete_medication(session: Session, entry_id: str) -> bool:
    """Delete an entry. Return True if deleted, False if not found."""
    entry = get_medication(session, entry_id)
    if entry is None:
        return False

    session.delete(entry)
    _commit(session)
    logger.info("Deleted medication %s (Box %d)", entry_id, entry.box_number)
    return True


def validate_medications(
    entries: Iterable[MedicationEntry], box_count: int = 10
) -> list[MedicationEntry]:
    """Check a full replacement schedule: boxes in range, no box or id twice."""
    incoming = list(entries)
    seen_boxes: set[int] = set()
    seen_ids: set[str] = set()
    for e in incoming:
        validate_box_number(e.box_number, box_count)
        if e.box_number in seen_boxes:
            raise BoxConflictError(f"Box {e.box_number} appears more than once")
        if e.id in seen_ids:
            raise ValueError(f"Medication id {e.id} appears more than once")
        seen_boxes.add(e.box_number)
        seen_ids.add(e.id)
        e.medication_time = normalize_time(e.medication_time)
    return incoming


def stage_medications(session: Session, entries: list[MedicationEntry]) -> None:
    """Swap the whole schedule for the given entries without committing."""
    for existing in session.exec(select(MedicationEntry)).all():
        session.delete(existing)
    session.flush()
    for e in entries:
        session.add(e)

