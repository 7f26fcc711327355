import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def generate_id():
    """Generate an opaque primary key"""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time as naive UTC, the form every timestamp column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AppointmentStatus:
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELED = "canceled"
    NO_SHOW = "no_show"

    ALL = (CONFIRMED, COMPLETED, CANCELED, NO_SHOW)


class Reservation(Base):
    """Short-lived hold on a slot. Has no status: valid, expired, or gone."""

    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True, default=generate_id)
    business_id = Column(String(64), nullable=False)
    service_id = Column(String(64), nullable=False)
    slot_start = Column(DateTime, nullable=False)
    slot_end = Column(DateTime, nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    # Capacity ceiling resolved from tenant configuration when the hold was taken
    max_simultaneous_bookings = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "business_id",
            "service_id",
            "slot_start",
            "slot_end",
            "idempotency_key",
            name="uq_reservations_idempotency",
        ),
        Index("ix_reservations_slot", "business_id", "service_id", "slot_start"),
        Index("ix_reservations_expires_at", "expires_at"),
    )

    def __repr__(self):
        return f"<Reservation(id={self.id}, slot={self.slot_start}-{self.slot_end}, expires={self.expires_at})>"


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String(36), primary_key=True, default=generate_id)
    booking_id = Column(String(32), unique=True, index=True, nullable=False)
    business_id = Column(String(64), nullable=False, index=True)
    service_id = Column(String(64), nullable=False)
    slot_start = Column(DateTime, nullable=False)
    slot_end = Column(DateTime, nullable=False)

    # Identity: registered customer OR guest contact details
    customer_id = Column(String(64), nullable=True, index=True)
    guest_name = Column(String(255), nullable=True)
    guest_email = Column(String(255), nullable=True)
    guest_phone = Column(String(50), nullable=True)

    status = Column(String(20), default=AppointmentStatus.CONFIRMED, nullable=False)
    version = Column(Integer, default=1, nullable=False)  # Optimistic lock counter
    reservation_id = Column(String(36), nullable=True)
    idempotency_key = Column(String(255), nullable=True, index=True)

    # Guest self-service link; only sha256(raw token) is ever stored
    guest_token_hash = Column(String(64), nullable=True)
    guest_token_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)  # Soft-delete marker, set on cancellation

    audit_logs = relationship(
        "AuditLog", back_populates="appointment", order_by="AuditLog.timestamp"
    )

    __table_args__ = (
        Index("ix_appointments_slot", "business_id", "service_id", "slot_start", "slot_end"),
    )

    def to_state(self) -> dict:
        """Snapshot used for audit old/new state"""
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "business_id": self.business_id,
            "service_id": self.service_id,
            "status": self.status,
            "version": self.version,
            "slot_start": self.slot_start.isoformat() if self.slot_start else None,
            "slot_end": self.slot_end.isoformat() if self.slot_end else None,
            "customer_id": self.customer_id,
            "guest_email": self.guest_email,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def __repr__(self):
        return f"<Appointment(id={self.id}, booking_id={self.booking_id}, status={self.status})>"


class AuditLog(Base):
    """Append-only record of appointment state transitions"""

    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=generate_id)
    appointment_id = Column(String(36), ForeignKey("appointments.id"), nullable=False, index=True)
    actor_id = Column(String(64), nullable=True)  # NULL for guest/system actions until attributed
    action = Column(String(50), nullable=False)
    old_state = Column(JSON, nullable=True)
    new_state = Column(JSON, nullable=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    appointment = relationship("Appointment", back_populates="audit_logs")


class SlotLock(Base):
    """
    One row per (business, service). Updating it inside a transaction serializes
    capacity checks for that service until the transaction ends.
    """

    __tablename__ = "slot_locks"

    business_id = Column(String(64), primary_key=True)
    service_id = Column(String(64), primary_key=True)
    locked_at = Column(DateTime, default=utcnow, nullable=False)


class SystemMetric(Base):
    __tablename__ = "system_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    metric_name = Column(String(100), nullable=False, index=True)
    metric_value = Column(Float, nullable=False)
    details = Column(JSON, nullable=True)
    recorded_at = Column(DateTime, default=utcnow, nullable=False)
