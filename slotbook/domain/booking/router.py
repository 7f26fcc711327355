"""Booking router - FastAPI endpoints for the hold-then-commit pipeline

Handlers are plain ``def`` so FastAPI runs them in its threadpool: every
request may wait on the per-service slot lock.
"""

import hmac
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ...auth import Actor, get_current_customer, get_current_owner, require_owner
from ...config import CRON_SECRET
from ...database import get_db
from ...rate_limiter import create_rate_limiter, guest_token_rate_limit
from .appointment_service import AppointmentService
from .booking_ids import generate_booking_id
from .cleanup import get_reservation_health, run_fallback_cleanup, run_scheduled_cleanup
from .errors import AppointmentNotFound, BookingIdConflict, InvalidGuestToken
from .guest_access import GuestAccessService, generate_guest_token, manage_path
from .notifications import BookingNotifier, LoggingNotifier
from .reservation_service import ReservationService
from .schemas import (
    AppointmentResponse,
    AuditLogResponse,
    CapacityResponse,
    CleanupResponse,
    CommitRequest,
    CommitResponse,
    CustomerRescheduleRequest,
    ExtendReservationRequest,
    GuestAccessRequest,
    GuestAccessResponse,
    GuestAppointmentResponse,
    GuestRescheduleRequest,
    GuestTokenRequest,
    ManualAppointmentRequest,
    RescheduleRequest,
    ReserveRequest,
    ReserveResponse,
    StatusUpdateRequest,
)
from .slots import to_utc_aware
from .tenant_config import TenantConfigProvider, get_tenant_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/booking", tags=["Booking"])

BOOKING_ID_ATTEMPTS = 3

GUEST_ACCESS_MESSAGE = "If a booking with that ID and email exists, an access link will be sent."

reserve_rate_limit = create_rate_limiter(limit=60, window_seconds=60, key_prefix="booking_reserve")
guest_access_rate_limit = create_rate_limiter(limit=5, window_seconds=900, key_prefix="guest_access")


def get_notifier() -> BookingNotifier:
    return LoggingNotifier()


def get_reservation_service(db: Session = Depends(get_db)) -> ReservationService:
    """Dependency injection for ReservationService"""
    return ReservationService(db)


def get_appointment_service(
    db: Session = Depends(get_db), notifier: BookingNotifier = Depends(get_notifier)
) -> AppointmentService:
    """Dependency injection for AppointmentService"""
    return AppointmentService(db, notifier)


def get_guest_access_service(
    db: Session = Depends(get_db), notifier: BookingNotifier = Depends(get_notifier)
) -> GuestAccessService:
    return GuestAccessService(db, notifier)


def _reserve_response(reservation) -> ReserveResponse:
    return ReserveResponse(
        reservationId=reservation.id,
        expiresAt=reservation.expires_at,
        slotStart=reservation.slot_start,
        slotEnd=reservation.slot_end,
    )


# ============================================================================
# HOLDS
# ============================================================================


@router.post("/reserve", response_model=ReserveResponse, status_code=status.HTTP_201_CREATED)
def reserve_slot(
    data: ReserveRequest,
    _: None = Depends(reserve_rate_limit),
    service: ReservationService = Depends(get_reservation_service),
    tenant: TenantConfigProvider = Depends(get_tenant_config),
):
    """Place a time-limited hold on a slot (idempotent on idempotencyKey)"""
    service_id = tenant.resolve_service_id(data.businessId, data.serviceId)
    reservation = service.create_reservation(
        business_id=data.businessId,
        service_id=service_id,
        slot_start=data.slotStart,
        slot_end=data.slotEnd,
        idempotency_key=data.idempotencyKey,
        max_simultaneous_bookings=tenant.get_max_simultaneous_bookings(data.businessId, service_id),
        ttl_minutes=data.ttlMinutes,
    )
    return _reserve_response(reservation)


@router.get("/capacity", response_model=CapacityResponse)
def get_capacity(
    businessId: str = Query(..., min_length=1),
    serviceId: str = Query(..., min_length=1),
    slotStart: datetime = Query(...),
    slotEnd: datetime = Query(...),
    service: ReservationService = Depends(get_reservation_service),
    tenant: TenantConfigProvider = Depends(get_tenant_config),
):
    """Remaining capacity for an interval, counted the way /reserve admits"""
    service_id = tenant.resolve_service_id(businessId, serviceId)
    max_bookings = tenant.get_max_simultaneous_bookings(businessId, service_id)
    available = service.get_available_capacity(businessId, service_id, slotStart, slotEnd, max_bookings)
    return CapacityResponse(available=available, maxSimultaneousBookings=max_bookings)


@router.delete("/reservations/{reservation_id}")
def release_reservation(
    reservation_id: str,
    service: ReservationService = Depends(get_reservation_service),
):
    """Give a hold back before it expires"""
    released = service.release_reservation(reservation_id)
    return {"success": True, "released": released}


@router.post("/reservations/{reservation_id}/extend", response_model=ReserveResponse)
def extend_reservation(
    reservation_id: str,
    data: ExtendReservationRequest,
    service: ReservationService = Depends(get_reservation_service),
):
    reservation = service.extend_reservation(reservation_id, data.additionalMinutes)
    return _reserve_response(reservation)


@router.post("/commit", response_model=CommitResponse, status_code=status.HTTP_201_CREATED)
def commit_reservation(
    data: CommitRequest,
    service: AppointmentService = Depends(get_appointment_service),
):
    """
    Turn a hold into a confirmed appointment.

    Guest bookings get a cancellation token in the response; it is not
    retrievable again.
    """
    cancellation_token = generate_guest_token() if data.guestEmail else None

    for attempt in range(1, BOOKING_ID_ATTEMPTS + 1):
        booking_id = generate_booking_id()
        try:
            appointment = service.commit_reservation(
                reservation_id=data.reservationId,
                booking_id=booking_id,
                customer_id=data.customerId,
                guest_email=data.guestEmail,
                guest_phone=data.guestPhone,
                guest_name=data.guestName,
                cancellation_token=cancellation_token,
            )
            break
        except BookingIdConflict:
            if attempt == BOOKING_ID_ATTEMPTS:
                raise
            logger.warning(f"⚠️ Booking id {booking_id} collided (attempt {attempt}), regenerating")

    response = CommitResponse(**AppointmentResponse.from_model(appointment).model_dump())
    if cancellation_token:
        response.cancellationToken = cancellation_token
        response.managePath = manage_path(appointment.booking_id, cancellation_token)
    return response


# ============================================================================
# OWNER OPERATIONS
# ============================================================================


@router.get("/appointments", response_model=list[AppointmentResponse])
def list_appointments(
    serviceId: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    owner: Actor = Depends(get_current_owner),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointments = service.list_appointments(
        owner.business_id, service_id=serviceId, status=status_filter, start=start, end=end
    )
    return [AppointmentResponse.from_model(a) for a in appointments]


@router.post("/appointments", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_manual_appointment(
    data: ManualAppointmentRequest,
    owner: Actor = Depends(get_current_owner),
    service: AppointmentService = Depends(get_appointment_service),
    tenant: TenantConfigProvider = Depends(get_tenant_config),
):
    """Owner-entered appointment, no hold required"""
    require_owner(owner, data.businessId)
    service_id = tenant.resolve_service_id(data.businessId, data.serviceId)
    appointment = service.create_manual_appointment(
        business_id=data.businessId,
        service_id=service_id,
        slot_start=data.slotStart,
        slot_end=data.slotEnd,
        max_simultaneous_bookings=tenant.get_max_simultaneous_bookings(data.businessId, service_id),
        actor_id=owner.user_id,
        idempotency_key=data.idempotencyKey,
        customer_id=data.customerId,
        guest_email=data.guestEmail,
        guest_phone=data.guestPhone,
        guest_name=data.guestName,
    )
    return AppointmentResponse.from_model(appointment)


@router.patch("/appointments/{appointment_id}/status", response_model=AppointmentResponse)
def update_appointment_status(
    appointment_id: str,
    data: StatusUpdateRequest,
    owner: Actor = Depends(get_current_owner),
    service: AppointmentService = Depends(get_appointment_service),
    tenant: TenantConfigProvider = Depends(get_tenant_config),
):
    """Complete, cancel, mark no-show, or undo a cancellation"""
    current = service.get_owned_appointment(appointment_id, owner.business_id)
    appointment = service.update_status(
        appointment_id,
        owner.business_id,
        data.status,
        expected_version=data.expectedVersion,
        actor_id=owner.user_id,
        max_simultaneous_bookings=tenant.get_max_simultaneous_bookings(
            current.business_id, current.service_id
        ),
    )
    return AppointmentResponse.from_model(appointment)


@router.post("/appointments/{appointment_id}/reschedule", response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: str,
    data: RescheduleRequest,
    owner: Actor = Depends(get_current_owner),
    service: AppointmentService = Depends(get_appointment_service),
    tenant: TenantConfigProvider = Depends(get_tenant_config),
):
    current = service.get_owned_appointment(appointment_id, owner.business_id)
    appointment = service.reschedule(
        appointment_id,
        owner.business_id,
        data.slotStart,
        data.slotEnd,
        data.expectedVersion,
        tenant.get_max_simultaneous_bookings(current.business_id, current.service_id),
        actor_id=owner.user_id,
    )
    return AppointmentResponse.from_model(appointment)


@router.get("/appointments/{appointment_id}/audit", response_model=list[AuditLogResponse])
def get_audit_trail(
    appointment_id: str,
    owner: Actor = Depends(get_current_owner),
    service: AppointmentService = Depends(get_appointment_service),
):
    entries = service.get_audit_trail(appointment_id, owner.business_id)
    return [
        AuditLogResponse(
            id=e.id,
            appointmentId=e.appointment_id,
            actorId=e.actor_id,
            action=e.action,
            oldState=e.old_state,
            newState=e.new_state,
            timestamp=e.timestamp,
        )
        for e in entries
    ]


# ============================================================================
# CUSTOMER SELF-SERVICE
# ============================================================================


@router.post("/customer/appointments/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_customer_appointment(
    appointment_id: str,
    customer: Actor = Depends(get_current_customer),
    service: AppointmentService = Depends(get_appointment_service),
):
    """A signed-in customer cancels their own confirmed appointment"""
    appointment = service.cancel_for_customer(appointment_id, customer.user_id)
    return AppointmentResponse.from_model(appointment)


@router.post("/customer/appointments/{appointment_id}/reschedule", response_model=AppointmentResponse)
def reschedule_customer_appointment(
    appointment_id: str,
    data: CustomerRescheduleRequest,
    customer: Actor = Depends(get_current_customer),
    service: AppointmentService = Depends(get_appointment_service),
    tenant: TenantConfigProvider = Depends(get_tenant_config),
):
    current = service.get_appointment(appointment_id)
    appointment = service.reschedule_for_customer(
        appointment_id,
        customer.user_id,
        data.newSlotStart,
        data.newSlotEnd,
        tenant.get_max_simultaneous_bookings(current.business_id, current.service_id),
    )
    return AppointmentResponse.from_model(appointment)


# ============================================================================
# GUEST SELF-SERVICE
# ============================================================================


@router.post("/guest-access", response_model=GuestAccessResponse)
def request_guest_access(
    data: GuestAccessRequest,
    _: None = Depends(guest_access_rate_limit),
    service: GuestAccessService = Depends(get_guest_access_service),
):
    """
    Issue a management link. The answer is the same whether or not the
    booking/email pair exists.
    """
    raw_token, path = service.issue_guest_token(data.bookingId, data.email)
    if raw_token:
        # Delivery belongs to the email service; the path is logged for development
        logger.debug(f"Guest access path for {data.bookingId}: {path}")
    return GuestAccessResponse(message=GUEST_ACCESS_MESSAGE)


@router.get("/guest-appointment/{booking_id}", response_model=GuestAppointmentResponse)
def get_guest_appointment(
    booking_id: str,
    request: Request,
    token: str = Query(..., min_length=1),
    service: GuestAccessService = Depends(get_guest_access_service),
):
    guest_token_rate_limit(request, booking_id)
    appointment = service.view_with_token(booking_id, token)
    return GuestAppointmentResponse(
        bookingId=appointment.booking_id,
        serviceId=appointment.service_id,
        slotStart=appointment.slot_start,
        slotEnd=appointment.slot_end,
        customerName=appointment.guest_name or appointment.guest_email,
        guestEmail=appointment.guest_email,
        status=appointment.status,
    )


@router.post("/guest-appointment/{booking_id}/cancel")
def cancel_guest_appointment(
    booking_id: str,
    data: GuestTokenRequest,
    request: Request,
    service: GuestAccessService = Depends(get_guest_access_service),
):
    guest_token_rate_limit(request, booking_id)
    appointment = service.cancel_with_token(booking_id, data.token)
    return {"success": True, "bookingId": appointment.booking_id, "status": appointment.status}


@router.post("/guest-appointment/{booking_id}/reschedule")
def reschedule_guest_appointment(
    booking_id: str,
    data: GuestRescheduleRequest,
    request: Request,
    service: GuestAccessService = Depends(get_guest_access_service),
    appointments: AppointmentService = Depends(get_appointment_service),
    tenant: TenantConfigProvider = Depends(get_tenant_config),
):
    guest_token_rate_limit(request, booking_id)
    try:
        current = appointments.get_by_booking_id(booking_id.strip().upper())
    except AppointmentNotFound:
        raise InvalidGuestToken() from None
    appointment = service.reschedule_with_token(
        booking_id,
        data.token,
        data.newSlotStart,
        data.newSlotEnd,
        tenant.get_max_simultaneous_bookings(current.business_id, current.service_id),
    )
    return {
        "success": True,
        "bookingId": appointment.booking_id,
        "slotStart": to_utc_aware(appointment.slot_start).isoformat(),
        "slotEnd": to_utc_aware(appointment.slot_end).isoformat(),
        "tokenInvalidated": True,
    }


# ============================================================================
# CLEANUP & HEALTH
# ============================================================================


def _verify_cron_secret(authorization: Optional[str]) -> None:
    if not CRON_SECRET:
        logger.warning("⚠️ CRON_SECRET not set - cleanup endpoint is unprotected")
        return
    expected = f"Bearer {CRON_SECRET}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _cleanup_response(result) -> CleanupResponse:
    return CleanupResponse(
        deletedCount=result.deleted_count,
        durationMs=result.duration_ms,
        trigger=result.trigger,
        anomalous=result.anomalous,
        skipped=result.skipped,
        expiredCount=result.expired_count,
    )


@router.post("/cron/cleanup-reservations", response_model=CleanupResponse)
def cron_cleanup_reservations(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Scheduled sweep of expired holds, called by the external scheduler"""
    _verify_cron_secret(authorization)
    return _cleanup_response(run_scheduled_cleanup(db))


@router.post("/cleanup/fallback", response_model=CleanupResponse)
def fallback_cleanup_reservations(db: Session = Depends(get_db)):
    """Credential-free sweep that only runs when expired holds pile up"""
    return _cleanup_response(run_fallback_cleanup(db))


@router.get("/health/reservations")
def reservation_health(db: Session = Depends(get_db)):
    return get_reservation_health(db)
