"""Alert history persistence."""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from pillwatch.adherence.models import Alert, AlertLog

logger = logging.getLogger(__name__)


def record_alert(session: Session, alert: Alert) -> AlertLog | None:
    """Append an alert to the history. Returns None if it couldn't be saved."""
    log = AlertLog(
        entry_id=alert.entry_id,
        box_number=alert.box_number,
        level=alert.level,
        message=alert.message,
        timestamp=alert.raised_at,
    )
    session.add(log)
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to record alert for Box %d", alert.box_number)
        return None
    session.refresh(log)
    return log


def get_alert_history(
    session: Session,
    entry_id: str | None = None,
    limit: int = 100,
) -> list[AlertLog]:
    """Get alert history, newest first, optionally for one entry."""
    stmt = select(AlertLog)
    if entry_id is not None:
        stmt = stmt.where(AlertLog.entry_id == entry_id)
    stmt = stmt.order_by(
        AlertLog.timestamp.desc(), AlertLog.id.desc()  # type: ignore[union-attr]
    ).limit(limit)
    return list(session.exec(stmt).all())
