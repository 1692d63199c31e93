"""Beacon mapping CRUD with box uniqueness enforcement."""

import logging
from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from pillwatch.boxes.models import BeaconMapping
from pillwatch.database import PersistenceError
from pillwatch.scanner.discovery import BeaconObservation, normalize_beacon_id

logger = logging.getLogger(__name__)


class BoxConflictError(ValueError):
    """The requested box (or beacon) is already taken."""


def validate_box_number(box_number: int, box_count: int) -> None:
    """Raise ValueError unless 1 <= box_number <= box_count."""
    if not 1 <= box_number <= box_count:
        raise ValueError(f"Box number must be between 1 and {box_count}, got {box_number}")


def _commit(session: Session) -> None:
    try:
        session.commit()
    except IntegrityError as e:
        # a concurrent writer took the box between our check and the commit
        session.rollback()
        logger.warning("Beacon mapping rejected by unique index: %s", e.orig)
        raise BoxConflictError("Box or beacon is already assigned") from e
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Failed to save beacon mappings")
        raise PersistenceError("Failed to save beacon mappings") from e


def list_mappings(session: Session) -> list[BeaconMapping]:
    """All mappings ordered by box number; empty if the store can't be read."""
    try:
        stmt = select(BeaconMapping).order_by(BeaconMapping.box_number)
        return list(session.exec(stmt).all())
    except SQLAlchemyError:
        logger.exception("Failed to load beacon mappings")
        return []


def get_mapping(session: Session, beacon_id: str) -> BeaconMapping | None:
    return session.get(BeaconMapping, normalize_beacon_id(beacon_id))


def get_mapping_for_box(session: Session, box_number: int) -> BeaconMapping | None:
    stmt = select(BeaconMapping).where(BeaconMapping.box_number == box_number)
    return session.exec(stmt).first()


def assign_beacons(
    session: Session, items: Iterable[tuple[str, int]], box_count: int = 10
) -> list[BeaconMapping]:
    """Map several beacons to boxes in one step.

    The whole batch is checked before anything is written.

    Raises:
        ValueError: If a box number is outside 1..box_count.
        BoxConflictError: If a box or beacon is already mapped, or repeated
            within the batch.
    """
    used_boxes = {m.box_number: m.beacon_id for m in list_mappings(session)}
    mapped = {beacon_id: box for box, beacon_id in used_boxes.items()}
    batch: list[tuple[str, int]] = []
    for beacon_id, box_number in items:
        validate_box_number(box_number, box_count)
        beacon_id = normalize_beacon_id(beacon_id)
        if beacon_id in mapped:
            raise BoxConflictError(
                f"Beacon {beacon_id} is already assigned to Box {mapped[beacon_id]}"
            )
        if box_number in used_boxes:
            raise BoxConflictError(
                f"Box {box_number} is already assigned to beacon {used_boxes[box_number]}"
            )
        used_boxes[box_number] = beacon_id
        mapped[beacon_id] = box_number
        batch.append((beacon_id, box_number))

    mappings = [BeaconMapping(beacon_id=b, box_number=n) for b, n in batch]
    for mapping in mappings:
        session.add(mapping)
    _commit(session)
    for mapping in mappings:
        session.refresh(mapping)
        logger.info("Assigned beacon %s to Box %d", mapping.beacon_id, mapping.box_number)
    return mappings


def assign_beacon(
    session: Session, beacon_id: str, box_number: int, box_count: int = 10
) -> BeaconMapping:
    """Map a single beacon to a box. See assign_beacons for the errors raised."""
    return assign_beacons(session, [(beacon_id, box_number)], box_count)[0]


def unassign_beacon(session: Session, beacon_id: str) -> bool:
    """Remove a beacon's mapping, freeing its box.

    Returns True if the mapping was removed, False if it didn't exist.
    """
    mapping = get_mapping(session, beacon_id)
    if mapping is None:
        return False

    session.delete(mapping)
    _commit(session)
    logger.info("Unassigned beacon %s from Box %d", mapping.beacon_id, mapping.box_number)
    return True


def free_boxes(
    session: Session,
    box_count: int = 10,
    excluding_beacon_id: str | None = None,
    staged: Iterable[int] = (),
) -> list[int]:
    """Box choices for one beacon in a multi-beacon assignment.

    Boxes mapped to other beacons and boxes staged (picked but not yet
    saved) for other beacons are left out. The excluded beacon's own
    mapped box stays on offer.
    """
    excluded = normalize_beacon_id(excluding_beacon_id) if excluding_beacon_id else None
    used = {m.box_number for m in list_mappings(session) if m.beacon_id != excluded}
    used |= set(staged)
    return [n for n in range(1, box_count + 1) if n not in used]


def list_unmapped_beacons(
    session: Session, observations: Iterable[BeaconObservation]
) -> list[BeaconObservation]:
    """Observed beacons without a mapping: the candidates for assignment."""
    mapped = {m.beacon_id for m in list_mappings(session)}
    return [o for o in observations if o.beacon_id not in mapped]


def validate_mappings(
    mappings: Iterable[BeaconMapping], box_count: int = 10
) -> list[BeaconMapping]:
    """Check a full replacement set: boxes in range, no box or beacon twice."""
    incoming = list(mappings)
    seen_boxes: set[int] = set()
    seen_ids: set[str] = set()
    for m in incoming:
        validate_box_number(m.box_number, box_count)
        m.beacon_id = normalize_beacon_id(m.beacon_id)
        if m.box_number in seen_boxes:
            raise BoxConflictError(f"Box {m.box_number} appears more than once")
        if m.beacon_id in seen_ids:
            raise BoxConflictError(f"Beacon {m.beacon_id} appears more than once")
        seen_boxes.add(m.box_number)
        seen_ids.add(m.beacon_id)
    return incoming


def stage_mappings(session: Session, mappings: list[BeaconMapping]) -> None:
    """Swap every mapping for the given ones without committing."""
    for existing in session.exec(select(BeaconMapping)).all():
        session.delete(existing)
    session.flush()
    for m in mappings:
        session.add(m)

