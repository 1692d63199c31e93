"""Backup restore of beacon mappings and the medication schedule.

Both collections are validated before anything is touched and replaced
in a single transaction, so a rejected restore leaves the stored data
exactly as it was.
"""

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from pillwatch.boxes.models import BeaconMapping
from pillwatch.boxes.store import BoxConflictError, stage_mappings, validate_mappings
from pillwatch.database import PersistenceError
from pillwatch.schedule.models import MedicationEntry
from pillwatch.schedule.store import stage_medications, validate_medications

logger = logging.getLogger(__name__)


def restore_snapshot(
    session: Session,
    mappings: list[BeaconMapping],
    medications: list[MedicationEntry],
    box_count: int = 10,
) -> tuple[int, int]:
    """Replace all mappings and medication entries.

    Returns (mapping count, medication count).

    Raises:
        ValueError: If a box is out of range or a medication id repeats.
        BoxConflictError: If a box or beacon appears more than once.
        PersistenceError: If the database rejects the write.
    """
    mappings = validate_mappings(mappings, box_count)
    medications = validate_medications(medications, box_count)

    try:
        stage_mappings(session, mappings)
        stage_medications(session, medications)
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.warning("Restore rejected by unique index: %s", e.orig)
        raise BoxConflictError("Backup conflicts with itself") from e
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Failed to restore backup")
        raise PersistenceError("Failed to restore backup") from e

    logger.info(
        "Restored %d beacon mapping(s) and %d medication entries",
        len(mappings),
        len(medications),
    )
    return len(mappings), len(medications)
