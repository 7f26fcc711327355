"""Audit trail writes for appointment transitions"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import AuditLog, utcnow
from .repository import BookingRepository

logger = logging.getLogger(__name__)

AUDIT_FAILURE_METRIC = "audit_write_failure"


def write_audit_entry(
    db: Session,
    appointment_id: str,
    action: str,
    old_state: Optional[dict],
    new_state: Optional[dict],
    actor_id: Optional[str] = None,
) -> Optional[AuditLog]:
    """
    Append one audit row inside the caller's transaction.

    The row goes through a savepoint: if it cannot be written the state change
    it describes is kept, the failure is logged as CRITICAL and the payload is
    parked in system_metrics so an operator can replay it.
    """
    try:
        with db.begin_nested():
            return BookingRepository.insert_audit_log(
                db,
                appointment_id=appointment_id,
                actor_id=actor_id,
                action=action,
                old_state=old_state,
                new_state=new_state,
                timestamp=utcnow(),
            )
    except SQLAlchemyError as e:
        logger.critical(
            f"🚨 AUDIT WRITE FAILED for appointment {appointment_id} ({action}): {e}"
        )
        try:
            with db.begin_nested():
                BookingRepository.record_metric(
                    db,
                    AUDIT_FAILURE_METRIC,
                    1,
                    details={
                        "appointment_id": appointment_id,
                        "action": action,
                        "actor_id": actor_id,
                        "old_state": old_state,
                        "new_state": new_state,
                        "error": str(e),
                    },
                )
        except SQLAlchemyError as dead_letter_error:
            logger.critical(
                f"🚨 Audit dead-letter also failed for appointment {appointment_id}: {dead_letter_error}"
            )
        return None


def backfill_audit_actor(db: Session, appointment_id: str, actor_id: str) -> bool:
    """
    Attribute the most recent null-actor audit row of an appointment.

    Best-effort: two unattributed transitions in quick succession can make this
    pick the wrong row.
    """
    entry = BookingRepository.latest_unattributed_audit_log(db, appointment_id)
    if entry is None:
        logger.debug(f"No unattributed audit row for appointment {appointment_id}")
        return False

    entry.actor_id = actor_id
    db.commit()
    logger.info(f"📝 Audit row {entry.id} attributed to actor {actor_id}")
    return True
