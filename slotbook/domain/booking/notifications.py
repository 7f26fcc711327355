"""
Notification dispatch for appointment state changes.

Delivery (email/SMS) belongs to an external service. The booking pipeline only
hands over the finalized appointment after its transaction committed; any
failure here is logged and counted, never turned into a booking failure.
"""

import logging
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import Appointment
from .repository import BookingRepository

logger = logging.getLogger(__name__)

APPOINTMENT_CONFIRMED = "appointment.confirmed"
APPOINTMENT_CANCELED = "appointment.canceled"
APPOINTMENT_RESCHEDULED = "appointment.rescheduled"
APPOINTMENT_STATUS_CHANGED = "appointment.status_changed"

NOTIFICATION_FAILURE_METRIC = "notification_failure"


class BookingNotifier(Protocol):
    def send(self, event: str, appointment: Appointment) -> None: ...


class LoggingNotifier:
    """Default notifier: records the event in the log only"""

    def send(self, event: str, appointment: Appointment) -> None:
        recipient = appointment.guest_email or appointment.customer_id
        logger.info(
            f"📧 {event} for booking {appointment.booking_id} "
            f"({appointment.slot_start} → {appointment.slot_end}) to {recipient}"
        )


def dispatch_notification(
    notifier: Optional[BookingNotifier],
    event: str,
    appointment: Appointment,
    db: Optional[Session] = None,
) -> bool:
    """Best-effort send. Returns True when the notifier accepted the event."""
    if notifier is None:
        return False

    try:
        notifier.send(event, appointment)
        return True
    except Exception as e:
        logger.error(
            f"❌ Failed to send {event} for booking {appointment.booking_id}: {e}",
            exc_info=True,
        )

    if db is not None:
        try:
            BookingRepository.record_metric(
                db,
                NOTIFICATION_FAILURE_METRIC,
                1,
                details={"event": event, "appointment_id": appointment.id},
            )
            db.commit()
        except SQLAlchemyError as metric_error:
            db.rollback()
            logger.error(f"❌ Could not record notification failure metric: {metric_error}")
    return False
