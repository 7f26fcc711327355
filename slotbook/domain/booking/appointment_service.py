"""Appointment service - Commit holds into appointments and drive the status machine"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import GUEST_TOKEN_TTL_MINUTES
from ...models import Appointment, AppointmentStatus, AuditLog, utcnow
from ...shared.validators import validate_email, validate_phone
from . import audit
from .booking_ids import generate_booking_id
from .errors import (
    AppointmentNotFound,
    BookingError,
    BookingIdConflict,
    CapacityExceeded,
    ConcurrentModification,
    InvalidTransition,
    NotAppointmentOwner,
    ReservationExpired,
    ReservationNotFound,
    ValidationError,
)
from .guest_access import hash_token
from .notifications import (
    APPOINTMENT_CANCELED,
    APPOINTMENT_CONFIRMED,
    APPOINTMENT_RESCHEDULED,
    APPOINTMENT_STATUS_CHANGED,
    BookingNotifier,
    LoggingNotifier,
    dispatch_notification,
)
from .repository import BookingRepository, translate_store_errors
from .slots import Capacity, Slot, check_reschedule_target, to_utc_naive
from .state_machine import TRANSITION_ACTIONS, ensure_transition, is_undo, normalize_status

logger = logging.getLogger(__name__)


def resolve_identity(
    customer_id: Optional[str],
    guest_email: Optional[str],
    guest_phone: Optional[str] = None,
    guest_name: Optional[str] = None,
) -> dict:
    """
    Exactly one identity path: a registered customer, or guest contact details
    keyed by email. Returns the appointment columns to set.
    """
    customer_id = customer_id.strip() if customer_id else None
    guest_email = guest_email.strip() if guest_email else None

    if customer_id and guest_email:
        raise ValidationError(
            {"customer_id": "provide either customer_id or guest_email, not both"}
        )
    if not customer_id and not guest_email:
        raise ValidationError({"customer_id": "customer_id or guest_email is required"})

    if customer_id:
        return {"customer_id": customer_id}

    fields: dict[str, str] = {}
    identity = {"guest_name": guest_name.strip() if guest_name else None}
    try:
        identity["guest_email"] = validate_email(guest_email)
    except ValueError as e:
        fields["guest_email"] = str(e)
    try:
        identity["guest_phone"] = validate_phone(guest_phone)
    except ValueError as e:
        fields["guest_phone"] = str(e)
    if fields:
        raise ValidationError(fields)
    return identity


class AppointmentService:
    """Service layer for appointment business logic"""

    def __init__(self, db: Session, notifier: Optional[BookingNotifier] = None):
        self.db = db
        self.repo = BookingRepository()
        self.notifier = notifier if notifier is not None else LoggingNotifier()

    # Commit

    def commit_reservation(
        self,
        reservation_id: str,
        booking_id: str,
        customer_id: Optional[str] = None,
        guest_email: Optional[str] = None,
        guest_phone: Optional[str] = None,
        guest_name: Optional[str] = None,
        cancellation_token: Optional[str] = None,
    ) -> Appointment:
        """
        Turn an unexpired hold into a confirmed appointment.

        The appointment insert, the hold delete and the "created" audit row share
        one transaction. If anything fails the hold is left untouched so the
        client can retry the commit.
        """
        if not reservation_id:
            raise ValidationError({"reservation_id": "is required"})
        if not booking_id:
            raise ValidationError({"booking_id": "is required"})
        identity = resolve_identity(customer_id, guest_email, guest_phone, guest_name)

        now = utcnow()
        try:
            with translate_store_errors(self.db, "commit_reservation"):
                reservation = self.repo.get_reservation(self.db, reservation_id)
                if reservation is None:
                    raise ReservationNotFound(reservation_id=reservation_id)
                if reservation.expires_at <= now:
                    raise ReservationExpired(reservation_id=reservation_id)
                if self.repo.booking_id_exists(self.db, booking_id):
                    raise BookingIdConflict(booking_id=booking_id)

                # Claim the hold first: a concurrent commit of the same hold deletes 0 rows
                if not self.repo.delete_reservation(self.db, reservation_id):
                    raise ReservationNotFound(reservation_id=reservation_id)

                token_columns = {}
                if cancellation_token:
                    token_columns = {
                        "guest_token_hash": hash_token(cancellation_token),
                        "guest_token_expires_at": now + timedelta(minutes=GUEST_TOKEN_TTL_MINUTES),
                    }

                appointment = self.repo.create_appointment(
                    self.db,
                    booking_id=booking_id,
                    business_id=reservation.business_id,
                    service_id=reservation.service_id,
                    slot_start=reservation.slot_start,
                    slot_end=reservation.slot_end,
                    status=AppointmentStatus.CONFIRMED,
                    version=1,
                    reservation_id=reservation.id,
                    idempotency_key=reservation.idempotency_key,
                    created_at=now,
                    updated_at=now,
                    **identity,
                    **token_columns,
                )
                audit.write_audit_entry(
                    self.db, appointment.id, "created", None, appointment.to_state(), actor_id=None
                )
                self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"⚠️ Booking id {booking_id} collided on insert")
            raise BookingIdConflict(booking_id=booking_id) from None
        except BookingError:
            self.db.rollback()
            raise

        logger.info(
            f"✅ Reservation {reservation_id} committed as booking {booking_id} "
            f"({appointment.service_id} at {appointment.slot_start})"
        )
        dispatch_notification(self.notifier, APPOINTMENT_CONFIRMED, appointment, self.db)
        return appointment

    def create_manual_appointment(
        self,
        business_id: str,
        service_id: str,
        slot_start: datetime,
        slot_end: datetime,
        max_simultaneous_bookings: int,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        booking_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        guest_email: Optional[str] = None,
        guest_phone: Optional[str] = None,
        guest_name: Optional[str] = None,
    ) -> Appointment:
        """Owner-entered booking: no hold, but the same capacity rule under the slot lock"""
        slot = Slot(business_id, service_id, slot_start, slot_end)
        capacity = Capacity(max_simultaneous_bookings)
        identity = resolve_identity(customer_id, guest_email, guest_phone, guest_name)
        booking_id = booking_id or generate_booking_id()
        now = utcnow()

        try:
            with translate_store_errors(self.db, "create_manual_appointment"):
                if idempotency_key:
                    existing = self.repo.get_appointment_by_idempotency_key(
                        self.db, business_id, idempotency_key
                    )
                    if existing:
                        logger.info(f"♻️ Manual booking replay for key {idempotency_key}: {existing.booking_id}")
                        self.db.rollback()
                        return existing

                self.repo.acquire_slot_lock(self.db, slot.business_id, slot.service_id)

                if idempotency_key:
                    existing = self.repo.get_appointment_by_idempotency_key(
                        self.db, business_id, idempotency_key
                    )
                    if existing:
                        self.db.commit()
                        return existing

                active = self.repo.count_active_bookings(
                    self.db, slot.business_id, slot.service_id, slot.start, slot.end, now
                )
                if not capacity.admits(active):
                    raise CapacityExceeded()
                if self.repo.booking_id_exists(self.db, booking_id):
                    raise BookingIdConflict(booking_id=booking_id)

                appointment = self.repo.create_appointment(
                    self.db,
                    booking_id=booking_id,
                    business_id=slot.business_id,
                    service_id=slot.service_id,
                    slot_start=slot.start,
                    slot_end=slot.end,
                    status=AppointmentStatus.CONFIRMED,
                    version=1,
                    idempotency_key=idempotency_key,
                    created_at=now,
                    updated_at=now,
                    **identity,
                )
                audit.write_audit_entry(
                    self.db, appointment.id, "created", None, appointment.to_state(), actor_id=actor_id
                )
                self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise BookingIdConflict(booking_id=booking_id) from None
        except BookingError:
            self.db.rollback()
            raise

        logger.info(f"✅ Manual booking {booking_id} created by {actor_id} for {slot.service_id} at {slot.start}")
        dispatch_notification(self.notifier, APPOINTMENT_CONFIRMED, appointment, self.db)
        return appointment

    # Transitions

    def update_status(
        self,
        appointment_id: str,
        business_id: str,
        new_status: str,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
        max_simultaneous_bookings: Optional[int] = None,
        audit_context: Optional[dict] = None,
    ) -> Appointment:
        """
        Move an appointment along the status machine with a compare-and-swap on
        ``version``. Re-confirming a canceled appointment needs
        ``max_simultaneous_bookings`` because the slot may have been taken since.
        ``audit_context`` is merged into the audit row's new state.
        """
        target = normalize_status(new_status)
        now = utcnow()

        try:
            with translate_store_errors(self.db, "update_status"):
                appointment = self._get_owned(appointment_id, business_id)
                current_version = appointment.version
                if expected_version is not None and expected_version != current_version:
                    raise ConcurrentModification(current_version)

                ensure_transition(appointment.status, target)
                old_state = appointment.to_state()

                values = {"status": target}
                if target == AppointmentStatus.CANCELED:
                    values["deleted_at"] = now
                elif is_undo(appointment.status, target):
                    self._check_capacity_for(
                        appointment,
                        appointment.slot_start,
                        appointment.slot_end,
                        max_simultaneous_bookings,
                        now,
                    )
                    values["deleted_at"] = None

                self._swap(appointment, current_version, **values)
                audit.write_audit_entry(
                    self.db,
                    appointment.id,
                    TRANSITION_ACTIONS[target],
                    old_state,
                    {**appointment.to_state(), **(audit_context or {})},
                    actor_id=actor_id,
                )
                self.db.commit()
        except BookingError:
            self.db.rollback()
            raise

        logger.info(
            f"🔄 Appointment {appointment.booking_id} {old_state['status']} → {target} "
            f"(v{appointment.version}, actor={actor_id})"
        )
        event = APPOINTMENT_CANCELED if target == AppointmentStatus.CANCELED else APPOINTMENT_STATUS_CHANGED
        dispatch_notification(self.notifier, event, appointment, self.db)
        return appointment

    def reschedule(
        self,
        appointment_id: str,
        business_id: str,
        new_start: datetime,
        new_end: datetime,
        expected_version: Optional[int],
        max_simultaneous_bookings: int,
        actor_id: Optional[str] = None,
        audit_context: Optional[dict] = None,
    ) -> Appointment:
        """Move a confirmed appointment to a new interval, capacity-checked excluding itself"""
        now = utcnow()

        try:
            with translate_store_errors(self.db, "reschedule"):
                appointment = self._get_owned(appointment_id, business_id)
                current_version = appointment.version
                if expected_version is not None and expected_version != current_version:
                    raise ConcurrentModification(current_version)
                if appointment.status != AppointmentStatus.CONFIRMED:
                    raise InvalidTransition(appointment.status, "rescheduled")

                slot = Slot(appointment.business_id, appointment.service_id, new_start, new_end)
                old_state = appointment.to_state()

                self._check_capacity_for(appointment, slot.start, slot.end, max_simultaneous_bookings, now)
                self._swap(appointment, current_version, slot_start=slot.start, slot_end=slot.end)
                audit.write_audit_entry(
                    self.db,
                    appointment.id,
                    "rescheduled",
                    old_state,
                    {**appointment.to_state(), **(audit_context or {})},
                    actor_id=actor_id,
                )
                self.db.commit()
        except BookingError:
            self.db.rollback()
            raise

        logger.info(
            f"📅 Appointment {appointment.booking_id} rescheduled "
            f"{old_state['slot_start']} → {appointment.slot_start.isoformat()}"
        )
        dispatch_notification(self.notifier, APPOINTMENT_RESCHEDULED, appointment, self.db)
        return appointment

    # Customer self-service

    def cancel_for_customer(self, appointment_id: str, customer_id: str) -> Appointment:
        """A signed-in customer cancels one of their own confirmed appointments"""
        appointment = self._get_for_customer(appointment_id, customer_id)
        return self.update_status(
            appointment.id,
            appointment.business_id,
            AppointmentStatus.CANCELED,
            actor_id=customer_id,
            audit_context={"canceled_by": "customer"},
        )

    def reschedule_for_customer(
        self,
        appointment_id: str,
        customer_id: str,
        new_start: datetime,
        new_end: datetime,
        max_simultaneous_bookings: int,
    ) -> Appointment:
        """Same rules as the guest link: future start, unchanged duration"""
        try:
            appointment = self._get_for_customer(appointment_id, customer_id)
            if appointment.status != AppointmentStatus.CONFIRMED:
                raise InvalidTransition(appointment.status, "rescheduled")
            slot = Slot(appointment.business_id, appointment.service_id, new_start, new_end)
            check_reschedule_target(slot, appointment.slot_start, appointment.slot_end, utcnow())
        except BookingError:
            self.db.rollback()
            raise

        return self.reschedule(
            appointment.id,
            appointment.business_id,
            slot.start,
            slot.end,
            None,
            max_simultaneous_bookings,
            actor_id=customer_id,
            audit_context={"modified_by": "customer"},
        )

    def _get_for_customer(self, appointment_id: str, customer_id: str) -> Appointment:
        appointment = self.get_appointment(appointment_id)
        if not customer_id or appointment.customer_id != customer_id:
            self.db.rollback()
            logger.warning(f"🔒 Customer {customer_id} denied access to appointment {appointment_id}")
            raise NotAppointmentOwner(appointment_id=appointment_id)
        return appointment

    def _get_owned(self, appointment_id: str, business_id: str) -> Appointment:
        appointment = self.repo.get_appointment(self.db, appointment_id)
        if appointment is None or appointment.business_id != business_id:
            raise AppointmentNotFound(appointment_id=appointment_id)
        return appointment

    def _check_capacity_for(
        self,
        appointment: Appointment,
        start: datetime,
        end: datetime,
        max_simultaneous_bookings: Optional[int],
        now: datetime,
    ) -> None:
        if max_simultaneous_bookings is None:
            raise ValidationError({"max_simultaneous_bookings": "is required for this change"})
        capacity = Capacity(max_simultaneous_bookings)

        self.repo.acquire_slot_lock(self.db, appointment.business_id, appointment.service_id)
        active = self.repo.count_active_bookings(
            self.db,
            appointment.business_id,
            appointment.service_id,
            start,
            end,
            now,
            exclude_appointment_id=appointment.id,
        )
        if not capacity.admits(active):
            raise CapacityExceeded()

    def _swap(self, appointment: Appointment, expected_version: int, **values) -> None:
        if not self.repo.compare_and_swap(self.db, appointment.id, expected_version, **values):
            self.db.rollback()
            # Rolled back, so this reads the winner's committed version
            raise ConcurrentModification(appointment.version)
        self.db.refresh(appointment)

    # Reads

    def get_appointment(self, appointment_id: str) -> Appointment:
        with translate_store_errors(self.db, "get_appointment"):
            appointment = self.repo.get_appointment(self.db, appointment_id)
        if appointment is None:
            raise AppointmentNotFound(appointment_id=appointment_id)
        return appointment

    def get_owned_appointment(self, appointment_id: str, business_id: str) -> Appointment:
        """Lookup scoped to one business; other tenants' ids read as not found"""
        with translate_store_errors(self.db, "get_owned_appointment"):
            return self._get_owned(appointment_id, business_id)

    def get_by_booking_id(self, booking_id: str) -> Appointment:
        with translate_store_errors(self.db, "get_by_booking_id"):
            appointment = self.repo.get_appointment_by_booking_id(self.db, booking_id)
        if appointment is None:
            raise AppointmentNotFound(booking_id=booking_id)
        return appointment

    def list_appointments(
        self,
        business_id: str,
        service_id: Optional[str] = None,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Appointment]:
        if status:
            status = normalize_status(status)
        start = to_utc_naive(start) if start else None
        end = to_utc_naive(end) if end else None
        with translate_store_errors(self.db, "list_appointments"):
            return self.repo.list_appointments(
                self.db,
                business_id,
                service_id=service_id,
                status=status,
                start=start,
                end=end,
                include_canceled=status == AppointmentStatus.CANCELED,
            )

    def get_audit_trail(self, appointment_id: str, business_id: str) -> list[AuditLog]:
        with translate_store_errors(self.db, "get_audit_trail"):
            self._get_owned(appointment_id, business_id)
            return self.repo.get_audit_logs(self.db, appointment_id)

    def backfill_audit_actor(self, appointment_id: str, actor_id: str) -> bool:
        with translate_store_errors(self.db, "backfill_audit_actor"):
            return audit.backfill_audit_actor(self.db, appointment_id, actor_id)
