"""Booking error taxonomy.

Every expected outcome of the pipeline is a ``BookingError`` subclass with a
stable ``code`` so callers can branch on kind instead of message text. The
HTTP layer maps ``http_status`` directly.
"""

from typing import Optional


class BookingError(Exception):
    code = "booking_error"
    http_status = 400
    retryable = False
    default_message = "Booking request failed"

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message, "retryable": self.retryable}
        payload.update(self.context)
        return payload


class ValidationError(BookingError):
    """Malformed input; ``fields`` maps each offending field to its problem"""

    code = "validation_error"
    http_status = 422
    default_message = "Invalid booking request"

    def __init__(self, fields: dict[str, str], message: Optional[str] = None):
        self.fields = fields
        names = ", ".join(sorted(fields))
        super().__init__(message or f"Invalid fields: {names}", fields=fields)


class InvalidSlot(BookingError):
    code = "invalid_slot"
    http_status = 422
    default_message = "Slot start must be before slot end"


class CapacityExceeded(BookingError):
    code = "capacity_exceeded"
    http_status = 409
    retryable = True
    default_message = "The selected time slot is no longer available"


class ReservationNotFound(BookingError):
    code = "reservation_not_found"
    http_status = 410
    default_message = "Reservation no longer valid, please start over"


class ReservationExpired(BookingError):
    code = "reservation_expired"
    http_status = 410
    default_message = "Reservation no longer valid, please start over"


class AppointmentNotFound(BookingError):
    code = "appointment_not_found"
    http_status = 404
    default_message = "Appointment not found"


class InvalidTransition(BookingError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Cannot change appointment status from {from_status} to {to_status}",
            from_status=from_status,
            to_status=to_status,
        )


class ConcurrentModification(BookingError):
    code = "concurrent_modification"
    http_status = 409
    retryable = True
    default_message = "Appointment has been modified by another user, reload and retry"

    def __init__(self, current_version: Optional[int] = None, message: Optional[str] = None):
        self.current_version = current_version
        super().__init__(message, current_version=current_version)


class BookingIdConflict(BookingError):
    code = "booking_id_conflict"
    http_status = 409
    retryable = True
    default_message = "Booking reference already in use, retry with a new one"


class NotAppointmentOwner(BookingError):
    code = "not_appointment_owner"
    http_status = 403
    default_message = "You do not have permission to change this appointment"


class InvalidGuestToken(BookingError):
    code = "invalid_guest_token"
    http_status = 401
    default_message = "Invalid or expired token"


class StoreUnavailable(BookingError):
    code = "store_unavailable"
    http_status = 503
    default_message = "Booking storage is temporarily unavailable"
