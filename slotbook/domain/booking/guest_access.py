"""
Guest self-service: manage a booking through a short-lived emailed link.

Only sha256(raw token) is stored. Viewing leaves the token valid until it
expires; any mutation (cancel, reschedule) clears it in the same transaction
as the change, so a link can be used for at most one mutation.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import GUEST_TOKEN_TTL_MINUTES
from ...models import Appointment, AppointmentStatus, utcnow
from . import audit
from .errors import (
    BookingError,
    CapacityExceeded,
    ConcurrentModification,
    InvalidGuestToken,
    InvalidTransition,
)
from .notifications import (
    APPOINTMENT_CANCELED,
    APPOINTMENT_RESCHEDULED,
    BookingNotifier,
    LoggingNotifier,
    dispatch_notification,
)
from .repository import BookingRepository, translate_store_errors
from .slots import Capacity, Slot, check_reschedule_target, snap_to_grain

logger = logging.getLogger(__name__)


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_guest_token() -> str:
    return secrets.token_hex(32)


def manage_path(booking_id: str, raw_token: str) -> str:
    return f"/manage/{booking_id}?token={raw_token}"


def normalize_booking_id(booking_id: str) -> str:
    return (booking_id or "").strip().upper()


class GuestAccessService:
    """Token-authenticated view/cancel/reschedule for guest bookings"""

    def __init__(self, db: Session, notifier: Optional[BookingNotifier] = None):
        self.db = db
        self.repo = BookingRepository()
        self.notifier = notifier if notifier is not None else LoggingNotifier()

    def issue_guest_token(self, booking_id: str, email: str) -> tuple[Optional[str], Optional[str]]:
        """
        Issue a fresh management link when booking id and guest email match.

        Returns (raw_token, manage_path), or (None, None) for any mismatch so the
        caller can answer identically whether or not the booking exists.
        """
        booking_id = normalize_booking_id(booking_id)
        email = (email or "").strip().lower()

        with translate_store_errors(self.db, "issue_guest_token"):
            appointment = self.repo.get_appointment_by_booking_id(self.db, booking_id)
            if (
                appointment is None
                or appointment.deleted_at is not None
                or not appointment.guest_email
                or appointment.guest_email.lower() != email
            ):
                self.db.rollback()
                logger.info(f"🔍 Guest access requested for unknown booking/email pair ({booking_id})")
                return None, None

            raw_token = generate_guest_token()
            appointment.guest_token_hash = hash_token(raw_token)
            appointment.guest_token_expires_at = utcnow() + timedelta(minutes=GUEST_TOKEN_TTL_MINUTES)
            self.db.commit()

        logger.info(f"🔑 Guest access link issued for booking {booking_id}")
        return raw_token, manage_path(booking_id, raw_token)

    def _authenticate(self, booking_id: str, raw_token: str, now: datetime) -> Appointment:
        """Resolve the appointment a token grants access to, or raise InvalidGuestToken"""
        if not raw_token:
            raise InvalidGuestToken()

        appointment = self.repo.get_appointment_by_booking_id(self.db, normalize_booking_id(booking_id))
        if appointment is None or not appointment.guest_token_hash:
            raise InvalidGuestToken()
        if not hmac.compare_digest(appointment.guest_token_hash, hash_token(raw_token)):
            raise InvalidGuestToken()
        if appointment.guest_token_expires_at is None or appointment.guest_token_expires_at <= now:
            raise InvalidGuestToken()
        return appointment

    def view_with_token(self, booking_id: str, raw_token: str) -> Appointment:
        with translate_store_errors(self.db, "view_with_token"):
            try:
                appointment = self._authenticate(booking_id, raw_token, utcnow())
            finally:
                self.db.rollback()
        return appointment

    def cancel_with_token(self, booking_id: str, raw_token: str) -> Appointment:
        now = utcnow()
        try:
            with translate_store_errors(self.db, "cancel_with_token"):
                appointment = self._authenticate(booking_id, raw_token, now)
                if appointment.status != AppointmentStatus.CONFIRMED:
                    raise InvalidTransition(appointment.status, AppointmentStatus.CANCELED)

                old_state = appointment.to_state()
                self._swap(
                    appointment,
                    status=AppointmentStatus.CANCELED,
                    deleted_at=now,
                    guest_token_hash=None,
                    guest_token_expires_at=None,
                )
                new_state = appointment.to_state()
                new_state["canceled_by"] = "guest"
                audit.write_audit_entry(self.db, appointment.id, "canceled", old_state, new_state, actor_id=None)
                self.db.commit()
        except BookingError:
            self.db.rollback()
            raise

        logger.info(f"🗑️ Guest canceled booking {appointment.booking_id}")
        dispatch_notification(self.notifier, APPOINTMENT_CANCELED, appointment, self.db)
        return appointment

    def reschedule_with_token(
        self,
        booking_id: str,
        raw_token: str,
        new_start: datetime,
        new_end: datetime,
        max_simultaneous_bookings: int,
    ) -> Appointment:
        """
        Guest reschedule: times are snapped to the 5 minute grain, the new slot
        must be in the future and keep the booked duration.
        """
        capacity = Capacity(max_simultaneous_bookings)
        now = utcnow()

        try:
            with translate_store_errors(self.db, "reschedule_with_token"):
                appointment = self._authenticate(booking_id, raw_token, now)
                if appointment.customer_id:
                    raise InvalidGuestToken("Registered customers must sign in to reschedule")
                if appointment.status != AppointmentStatus.CONFIRMED:
                    raise InvalidTransition(appointment.status, "rescheduled")

                slot = Slot(
                    appointment.business_id,
                    appointment.service_id,
                    snap_to_grain(new_start),
                    snap_to_grain(new_end),
                )
                check_reschedule_target(slot, appointment.slot_start, appointment.slot_end, now)

                self.repo.acquire_slot_lock(self.db, slot.business_id, slot.service_id)
                active = self.repo.count_active_bookings(
                    self.db,
                    slot.business_id,
                    slot.service_id,
                    slot.start,
                    slot.end,
                    now,
                    exclude_appointment_id=appointment.id,
                )
                if not capacity.admits(active):
                    raise CapacityExceeded()

                old_state = appointment.to_state()
                self._swap(
                    appointment,
                    slot_start=slot.start,
                    slot_end=slot.end,
                    guest_token_hash=None,
                    guest_token_expires_at=None,
                )
                new_state = appointment.to_state()
                new_state["modified_by"] = "guest"
                audit.write_audit_entry(self.db, appointment.id, "rescheduled", old_state, new_state, actor_id=None)
                self.db.commit()
        except BookingError:
            self.db.rollback()
            raise

        logger.info(f"📅 Guest rescheduled booking {appointment.booking_id} to {appointment.slot_start}")
        dispatch_notification(self.notifier, APPOINTMENT_RESCHEDULED, appointment, self.db)
        return appointment

    def _swap(self, appointment: Appointment, **values) -> None:
        if not self.repo.compare_and_swap(self.db, appointment.id, appointment.version, **values):
            self.db.rollback()
            raise ConcurrentModification(appointment.version)
        self.db.refresh(appointment)
