import re
from datetime import datetime, timedelta, timezone

import pytest

from slotbook.domain.booking.booking_ids import BOOKING_ID_ALPHABET, generate_booking_id
from slotbook.domain.booking.errors import InvalidSlot, InvalidTransition, ValidationError
from slotbook.domain.booking.slots import Capacity, Slot, clamp_ttl, snap_to_grain
from slotbook.domain.booking.state_machine import (
    can_transition,
    ensure_transition,
    is_undo,
    normalize_status,
)


def test_slot_rejects_empty_or_inverted_interval():
    start = datetime(2030, 1, 1, 10, 0)
    with pytest.raises(InvalidSlot):
        Slot("b", "s", start, start)
    with pytest.raises(InvalidSlot):
        Slot("b", "s", start, start - timedelta(minutes=1))


def test_slot_normalizes_aware_times_to_naive_utc():
    aware = datetime(2030, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    slot = Slot("b", "s", aware, aware + timedelta(minutes=45))

    assert slot.start == datetime(2030, 1, 1, 10, 0)
    assert slot.start.tzinfo is None
    assert slot.duration_minutes == 45


def test_slot_overlap_is_half_open():
    slot = Slot("b", "s", datetime(2030, 1, 1, 10, 0), datetime(2030, 1, 1, 10, 30))

    assert slot.overlaps(datetime(2030, 1, 1, 10, 15), datetime(2030, 1, 1, 10, 45))
    assert not slot.overlaps(datetime(2030, 1, 1, 10, 30), datetime(2030, 1, 1, 11, 0))
    assert not slot.overlaps(datetime(2030, 1, 1, 9, 30), datetime(2030, 1, 1, 10, 0))


@pytest.mark.parametrize(
    "minute,expected",
    [(0, 0), (3, 5), (7, 5), (8, 10), (57, 55), (58, 60)],
)
def test_snap_to_grain(minute, expected):
    value = datetime(2030, 1, 1, 9, minute, 42)
    snapped = snap_to_grain(value)

    assert snapped == datetime(2030, 1, 1, 9, 0) + timedelta(minutes=expected)


def test_clamp_ttl_defaults_and_bounds():
    assert clamp_ttl(None) == 15
    assert clamp_ttl(1) == 5
    assert clamp_ttl(20) == 20
    assert clamp_ttl(90) == 30


def test_capacity_remaining_never_negative():
    capacity = Capacity(2)

    assert capacity.remaining(0) == 2
    assert capacity.remaining(5) == 0
    assert capacity.admits(1)
    assert not capacity.admits(2)


def test_capacity_must_be_positive():
    with pytest.raises(ValidationError) as exc:
        Capacity(0)
    assert "max_simultaneous_bookings" in exc.value.fields


@pytest.mark.parametrize(
    "current,target",
    [
        ("confirmed", "completed"),
        ("confirmed", "canceled"),
        ("confirmed", "no_show"),
        ("canceled", "confirmed"),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)
    ensure_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        ("completed", "confirmed"),
        ("no_show", "confirmed"),
        ("canceled", "completed"),
        ("completed", "canceled"),
        ("confirmed", "confirmed"),
    ],
)
def test_forbidden_transitions(current, target):
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransition):
        ensure_transition(current, target)


def test_normalize_status_accepts_ui_spellings():
    assert normalize_status("Cancelled") == "canceled"
    assert normalize_status("no-show") == "no_show"
    with pytest.raises(ValidationError):
        normalize_status("reserved")


def test_only_cancel_undo_is_backward():
    assert is_undo("canceled", "confirmed")
    assert not is_undo("completed", "confirmed")


def test_booking_id_format():
    booking_id = generate_booking_id()

    assert re.fullmatch(r"BK-[A-Z0-9]{3}-[A-Z0-9]{3}-[A-Z0-9]{3}", booking_id)
    assert len(BOOKING_ID_ALPHABET) == 36
    assert len({generate_booking_id() for _ in range(50)}) == 50
