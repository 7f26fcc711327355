"""Appointment status transitions.

confirmed -> completed | canceled | no_show
canceled  -> confirmed   (operator undo, the only backward move)
"""

from ...models import AppointmentStatus
from .errors import InvalidTransition, ValidationError

ALLOWED_TRANSITIONS: dict[str, frozenset] = {
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.CANCELED: frozenset({AppointmentStatus.CONFIRMED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

# Audit action recorded for each target status
TRANSITION_ACTIONS = {
    AppointmentStatus.COMPLETED: "completed",
    AppointmentStatus.CANCELED: "canceled",
    AppointmentStatus.NO_SHOW: "no_show",
    AppointmentStatus.CONFIRMED: "reconfirmed",
}


def normalize_status(value: str) -> str:
    """Accept the UI spellings ("cancelled", "no-show") for stored statuses"""
    normalized = (value or "").strip().lower().replace("-", "_")
    if normalized == "cancelled":
        normalized = AppointmentStatus.CANCELED
    if normalized not in AppointmentStatus.ALL:
        raise ValidationError({"status": f"unknown status '{value}'"})
    return normalized


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)


def is_undo(current: str, target: str) -> bool:
    return current == AppointmentStatus.CANCELED and target == AppointmentStatus.CONFIRMED
