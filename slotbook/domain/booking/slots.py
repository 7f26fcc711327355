"""Slot and capacity value types"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ...config import (
    RESERVATION_DEFAULT_TTL_MINUTES,
    RESERVATION_TTL_MAX_MINUTES,
    RESERVATION_TTL_MIN_MINUTES,
)
from .errors import InvalidSlot, ValidationError

GRAIN_MINUTES = 5


def to_utc_naive(value: datetime) -> datetime:
    """Normalize to naive UTC. Naive input is assumed to already be UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_utc_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Stored naive timestamps are UTC; return them with the offset attached"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def snap_to_grain(value: datetime, grain_minutes: int = GRAIN_MINUTES) -> datetime:
    """
    Round to the nearest grain block: 9:03 -> 9:05, 9:07 -> 9:05, 9:08 -> 9:10.
    Seconds are dropped.
    """
    base = value.replace(second=0, microsecond=0)
    remainder = base.minute % grain_minutes
    if remainder == 0:
        return base
    if remainder >= grain_minutes / 2:
        return base + timedelta(minutes=grain_minutes - remainder)
    return base - timedelta(minutes=remainder)


def clamp_ttl(ttl_minutes: Optional[int]) -> int:
    """Hold lifetime in minutes, defaulted and clamped to the allowed bounds"""
    if ttl_minutes is None:
        ttl_minutes = RESERVATION_DEFAULT_TTL_MINUTES
    return max(RESERVATION_TTL_MIN_MINUTES, min(RESERVATION_TTL_MAX_MINUTES, int(ttl_minutes)))


@dataclass(frozen=True)
class Slot:
    business_id: str
    service_id: str
    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", to_utc_naive(self.start))
        object.__setattr__(self, "end", to_utc_naive(self.end))
        if self.start >= self.end:
            raise InvalidSlot(
                f"Slot start {self.start.isoformat()} must be before end {self.end.isoformat()}"
            )

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap: [10:00,10:30) and [10:30,11:00) do not overlap"""
        return self.start < to_utc_naive(end) and to_utc_naive(start) < self.end


@dataclass(frozen=True)
class Capacity:
    max_simultaneous_bookings: int

    def __post_init__(self):
        if self.max_simultaneous_bookings is None or int(self.max_simultaneous_bookings) < 1:
            raise ValidationError(
                {"max_simultaneous_bookings": "must be a positive integer"}
            )

    def remaining(self, active_count: int) -> int:
        return max(0, self.max_simultaneous_bookings - active_count)

    def admits(self, active_count: int) -> bool:
        return active_count < self.max_simultaneous_bookings


def check_reschedule_target(slot: Slot, booked_start: datetime, booked_end: datetime, now: datetime) -> None:
    """A self-service move must land in the future and keep the booked duration"""
    if slot.start <= now:
        raise ValidationError({"new_slot_start": "cannot reschedule to a time in the past"})
    booked_minutes = int((booked_end - booked_start).total_seconds() // 60)
    if slot.duration_minutes != booked_minutes:
        raise ValidationError(
            {"new_slot_end": f"duration must stay {booked_minutes} minutes, got {slot.duration_minutes}"}
        )
