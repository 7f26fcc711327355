"""Booking repository - Database operations for reservations, appointments and audit rows

Methods flush but never commit; the service that opened the unit of work owns
commit and rollback so multi-table steps stay in one transaction.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ...models import (
    Appointment,
    AppointmentStatus,
    AuditLog,
    Reservation,
    SlotLock,
    SystemMetric,
    utcnow,
)
from .errors import StoreUnavailable

logger = logging.getLogger(__name__)


@contextmanager
def translate_store_errors(db: Session, operation: str):
    """Roll back and surface infrastructure faults as StoreUnavailable"""
    try:
        yield
    except IntegrityError:
        raise
    except (OperationalError, DBAPIError) as e:
        logger.error(f"❌ Store failure during {operation}: {e}")
        db.rollback()
        raise StoreUnavailable(f"Booking storage unavailable during {operation}") from e


class BookingRepository:
    """Repository for booking database operations"""

    # Slot lock
    @staticmethod
    def acquire_slot_lock(db: Session, business_id: str, service_id: str) -> None:
        """
        Take the per-service admission lock for the rest of the current transaction.
        The first caller for a service creates the row; racing creators fall back
        to the UPDATE, which blocks until the winner commits.
        """
        touch = (
            update(SlotLock)
            .where(SlotLock.business_id == business_id, SlotLock.service_id == service_id)
            .values(locked_at=utcnow())
        )
        if db.execute(touch).rowcount:
            return

        try:
            with db.begin_nested():
                db.add(SlotLock(business_id=business_id, service_id=service_id, locked_at=utcnow()))
                db.flush()
        except IntegrityError:
            db.execute(touch)

    # Capacity counting
    @staticmethod
    def count_overlapping_appointments(
        db: Session,
        business_id: str,
        service_id: str,
        slot_start: datetime,
        slot_end: datetime,
        exclude_appointment_id: Optional[str] = None,
    ) -> int:
        query = select(func.count(Appointment.id)).where(
            Appointment.business_id == business_id,
            Appointment.service_id == service_id,
            Appointment.status == AppointmentStatus.CONFIRMED,
            Appointment.deleted_at.is_(None),
            Appointment.slot_start < slot_end,
            Appointment.slot_end > slot_start,
        )
        if exclude_appointment_id:
            query = query.where(Appointment.id != exclude_appointment_id)
        return db.execute(query).scalar_one()

    @staticmethod
    def count_overlapping_reservations(
        db: Session,
        business_id: str,
        service_id: str,
        slot_start: datetime,
        slot_end: datetime,
        now: datetime,
    ) -> int:
        query = select(func.count(Reservation.id)).where(
            Reservation.business_id == business_id,
            Reservation.service_id == service_id,
            Reservation.expires_at > now,
            Reservation.slot_start < slot_end,
            Reservation.slot_end > slot_start,
        )
        return db.execute(query).scalar_one()

    @classmethod
    def count_active_bookings(
        cls,
        db: Session,
        business_id: str,
        service_id: str,
        slot_start: datetime,
        slot_end: datetime,
        now: datetime,
        exclude_appointment_id: Optional[str] = None,
    ) -> int:
        """Confirmed appointments plus unexpired holds overlapping the interval"""
        return cls.count_overlapping_appointments(
            db, business_id, service_id, slot_start, slot_end, exclude_appointment_id
        ) + cls.count_overlapping_reservations(db, business_id, service_id, slot_start, slot_end, now)

    # Reservations
    @staticmethod
    def get_reservation(db: Session, reservation_id: str) -> Optional[Reservation]:
        return db.execute(
            select(Reservation).where(Reservation.id == reservation_id)
        ).scalar_one_or_none()

    @staticmethod
    def find_idempotent_reservation(
        db: Session,
        business_id: str,
        service_id: str,
        slot_start: datetime,
        slot_end: datetime,
        idempotency_key: str,
        now: datetime,
    ) -> Optional[Reservation]:
        """Exact-match lookup; overlap never applies to idempotency"""
        return db.execute(
            select(Reservation).where(
                Reservation.business_id == business_id,
                Reservation.service_id == service_id,
                Reservation.slot_start == slot_start,
                Reservation.slot_end == slot_end,
                Reservation.idempotency_key == idempotency_key,
                Reservation.expires_at > now,
            )
        ).scalar_one_or_none()

    @staticmethod
    def delete_stale_idempotent_reservation(
        db: Session,
        business_id: str,
        service_id: str,
        slot_start: datetime,
        slot_end: datetime,
        idempotency_key: str,
        now: datetime,
    ) -> int:
        """Drop an expired hold that still occupies the idempotency unique key"""
        result = db.execute(
            delete(Reservation).where(
                Reservation.business_id == business_id,
                Reservation.service_id == service_id,
                Reservation.slot_start == slot_start,
                Reservation.slot_end == slot_end,
                Reservation.idempotency_key == idempotency_key,
                Reservation.expires_at <= now,
            )
        )
        return result.rowcount

    @staticmethod
    def create_reservation(db: Session, **reservation_data) -> Reservation:
        reservation = Reservation(**reservation_data)
        db.add(reservation)
        db.flush()
        return reservation

    @staticmethod
    def delete_reservation(db: Session, reservation_id: str) -> int:
        result = db.execute(delete(Reservation).where(Reservation.id == reservation_id))
        return result.rowcount

    @staticmethod
    def extend_reservation(
        db: Session, reservation_id: str, new_expires_at: datetime, now: datetime
    ) -> int:
        result = db.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.expires_at > now)
            .values(expires_at=new_expires_at)
        )
        return result.rowcount

    @staticmethod
    def delete_expired_reservations(db: Session, now: datetime) -> int:
        result = db.execute(delete(Reservation).where(Reservation.expires_at <= now))
        return result.rowcount

    @staticmethod
    def count_expired_reservations(db: Session, now: datetime) -> int:
        return db.execute(
            select(func.count(Reservation.id)).where(Reservation.expires_at <= now)
        ).scalar_one()

    @staticmethod
    def count_active_reservations(db: Session, now: datetime) -> int:
        return db.execute(
            select(func.count(Reservation.id)).where(Reservation.expires_at > now)
        ).scalar_one()

    @staticmethod
    def oldest_expired_reservation_at(db: Session, now: datetime) -> Optional[datetime]:
        return db.execute(
            select(func.min(Reservation.expires_at)).where(Reservation.expires_at <= now)
        ).scalar_one()

    @staticmethod
    def count_businesses_with_reservations(db: Session) -> int:
        return db.execute(select(func.count(func.distinct(Reservation.business_id)))).scalar_one()

    # Appointments
    @staticmethod
    def get_appointment(db: Session, appointment_id: str) -> Optional[Appointment]:
        return db.execute(
            select(Appointment).where(Appointment.id == appointment_id)
        ).scalar_one_or_none()

    @staticmethod
    def get_appointment_by_booking_id(db: Session, booking_id: str) -> Optional[Appointment]:
        return db.execute(
            select(Appointment).where(Appointment.booking_id == booking_id)
        ).scalar_one_or_none()

    @staticmethod
    def booking_id_exists(db: Session, booking_id: str) -> bool:
        return (
            db.execute(
                select(func.count(Appointment.id)).where(Appointment.booking_id == booking_id)
            ).scalar_one()
            > 0
        )

    @staticmethod
    def get_appointment_by_idempotency_key(
        db: Session, business_id: str, idempotency_key: str
    ) -> Optional[Appointment]:
        return db.execute(
            select(Appointment).where(
                Appointment.business_id == business_id,
                Appointment.idempotency_key == idempotency_key,
                Appointment.deleted_at.is_(None),
            )
        ).scalar_one_or_none()

    @staticmethod
    def create_appointment(db: Session, **appointment_data) -> Appointment:
        appointment = Appointment(**appointment_data)
        db.add(appointment)
        db.flush()
        return appointment

    @staticmethod
    def compare_and_swap(
        db: Session, appointment_id: str, expected_version: int, **values
    ) -> int:
        """
        UPDATE ... WHERE version = :expected, bumping version. Returns the number
        of rows changed: 0 means another writer got there first.
        """
        values.setdefault("updated_at", utcnow())
        result = db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.version == expected_version)
            .values(version=Appointment.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    def list_appointments(
        db: Session,
        business_id: str,
        service_id: Optional[str] = None,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        include_canceled: bool = False,
    ) -> list[Appointment]:
        query = select(Appointment).where(Appointment.business_id == business_id)
        if not include_canceled:
            query = query.where(Appointment.deleted_at.is_(None))
        if service_id:
            query = query.where(Appointment.service_id == service_id)
        if status:
            query = query.where(Appointment.status == status)
        if start:
            query = query.where(Appointment.slot_start >= start)
        if end:
            query = query.where(Appointment.slot_end <= end)
        return list(db.execute(query.order_by(Appointment.slot_start.asc())).scalars().all())

    # Audit
    @staticmethod
    def insert_audit_log(db: Session, **audit_data) -> AuditLog:
        entry = AuditLog(**audit_data)
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def latest_unattributed_audit_log(db: Session, appointment_id: str) -> Optional[AuditLog]:
        return db.execute(
            select(AuditLog)
            .where(AuditLog.appointment_id == appointment_id, AuditLog.actor_id.is_(None))
            .order_by(AuditLog.timestamp.desc())
            .limit(1)
        ).scalar_one_or_none()

    @staticmethod
    def get_audit_logs(db: Session, appointment_id: str) -> list[AuditLog]:
        return list(
            db.execute(
                select(AuditLog)
                .where(AuditLog.appointment_id == appointment_id)
                .order_by(AuditLog.timestamp.asc())
            )
            .scalars()
            .all()
        )

    # Metrics
    @staticmethod
    def record_metric(
        db: Session, metric_name: str, metric_value: float, details: Optional[dict] = None
    ) -> SystemMetric:
        metric = SystemMetric(
            metric_name=metric_name, metric_value=metric_value, details=details, recorded_at=utcnow()
        )
        db.add(metric)
        db.flush()
        return metric

    @staticmethod
    def latest_metric(db: Session, metric_name: str) -> Optional[SystemMetric]:
        return db.execute(
            select(SystemMetric)
            .where(SystemMetric.metric_name == metric_name)
            .order_by(SystemMetric.recorded_at.desc(), SystemMetric.id.desc())
            .limit(1)
        ).scalar_one_or_none()
