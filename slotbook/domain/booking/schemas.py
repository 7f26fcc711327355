"""Booking domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from ...shared.validators import validate_email
from .slots import to_utc_aware


class UTCResponse(BaseModel):
    """Timestamps are stored as naive UTC; responses always carry the +00:00 offset"""

    @field_serializer(
        "expiresAt", "slotStart", "slotEnd", "createdAt", "updatedAt", "deletedAt", "timestamp",
        when_used="json-unless-none",
        check_fields=False,
    )
    def serialize_utc(self, value: datetime) -> str:
        return to_utc_aware(value).isoformat()


class ReserveRequest(BaseModel):
    """Schema for requesting a hold on a slot"""

    businessId: str = Field(min_length=1, max_length=64)
    serviceId: str = Field(min_length=1, max_length=64)
    slotStart: datetime
    slotEnd: datetime
    idempotencyKey: str = Field(min_length=1, max_length=255)
    ttlMinutes: Optional[int] = None


class ReserveResponse(UTCResponse):
    reservationId: str
    expiresAt: datetime
    slotStart: datetime
    slotEnd: datetime


class ExtendReservationRequest(BaseModel):
    additionalMinutes: int = Field(gt=0, le=30)


class CapacityResponse(BaseModel):
    available: int
    maxSimultaneousBookings: int


class CommitRequest(BaseModel):
    """Schema for committing a hold; either customerId or guestEmail"""

    reservationId: str = Field(min_length=1)
    customerId: Optional[str] = None
    guestEmail: Optional[str] = None
    guestPhone: Optional[str] = None
    guestName: Optional[str] = Field(default=None, max_length=255)


class ManualAppointmentRequest(BaseModel):
    """Schema for an owner-entered appointment"""

    businessId: str = Field(min_length=1, max_length=64)
    serviceId: str = Field(min_length=1, max_length=64)
    slotStart: datetime
    slotEnd: datetime
    idempotencyKey: Optional[str] = Field(default=None, max_length=255)
    customerId: Optional[str] = None
    guestEmail: Optional[str] = None
    guestPhone: Optional[str] = None
    guestName: Optional[str] = Field(default=None, max_length=255)


class StatusUpdateRequest(BaseModel):
    status: str
    expectedVersion: Optional[int] = None


class RescheduleRequest(BaseModel):
    slotStart: datetime
    slotEnd: datetime
    expectedVersion: Optional[int] = None


class AppointmentResponse(UTCResponse):
    """Schema for appointment response"""

    id: str
    bookingId: str
    businessId: str
    serviceId: str
    slotStart: datetime
    slotEnd: datetime
    status: str
    version: int
    customerId: Optional[str] = None
    guestName: Optional[str] = None
    guestEmail: Optional[str] = None
    guestPhone: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    deletedAt: Optional[datetime] = None

    @classmethod
    def from_model(cls, appointment) -> "AppointmentResponse":
        return cls(
            id=appointment.id,
            bookingId=appointment.booking_id,
            businessId=appointment.business_id,
            serviceId=appointment.service_id,
            slotStart=appointment.slot_start,
            slotEnd=appointment.slot_end,
            status=appointment.status,
            version=appointment.version,
            customerId=appointment.customer_id,
            guestName=appointment.guest_name,
            guestEmail=appointment.guest_email,
            guestPhone=appointment.guest_phone,
            createdAt=appointment.created_at,
            updatedAt=appointment.updated_at,
            deletedAt=appointment.deleted_at,
        )


class CommitResponse(AppointmentResponse):
    # Returned once; only its hash is stored
    cancellationToken: Optional[str] = None
    managePath: Optional[str] = None


class AuditLogResponse(UTCResponse):
    id: str
    appointmentId: str
    actorId: Optional[str] = None
    action: str
    oldState: Optional[dict] = None
    newState: Optional[dict] = None
    timestamp: datetime


class GuestAccessRequest(BaseModel):
    bookingId: str = Field(min_length=1, max_length=32)
    email: str

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v):
        return validate_email(v)


class GuestAccessResponse(BaseModel):
    success: bool = True
    message: str
    managePath: Optional[str] = None


class GuestTokenRequest(BaseModel):
    token: str = Field(min_length=1)


class GuestRescheduleRequest(BaseModel):
    token: str = Field(min_length=1)
    newSlotStart: datetime
    newSlotEnd: datetime


class CustomerRescheduleRequest(BaseModel):
    newSlotStart: datetime
    newSlotEnd: datetime


class GuestAppointmentResponse(UTCResponse):
    bookingId: str
    serviceId: str
    slotStart: datetime
    slotEnd: datetime
    customerName: Optional[str] = None
    guestEmail: Optional[str] = None
    status: str


class CleanupResponse(BaseModel):
    success: bool = True
    deletedCount: int
    durationMs: int
    trigger: str
    anomalous: bool = False
    skipped: bool = False
    expiredCount: Optional[int] = None
