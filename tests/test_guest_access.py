from datetime import timedelta

import pytest
from sqlalchemy import update

from slotbook.domain.booking.errors import (
    CapacityExceeded,
    InvalidGuestToken,
    InvalidTransition,
    ValidationError,
)
from slotbook.domain.booking.guest_access import GuestAccessService, hash_token
from slotbook.models import Appointment, AuditLog, utcnow

from conftest import BUSINESS_ID, SERVICE_ID

BOOKING_ID = "BK-GST-AAA-111"


@pytest.fixture
def guest_access(db, notifier):
    return GuestAccessService(db, notifier)


@pytest.fixture
def guest_booking(book, slot_at):
    return book(*slot_at(10), BOOKING_ID, guest_email="Guest@Example.com", guest_name="Ada")


def test_token_is_issued_for_matching_email(db, guest_access, guest_booking):
    raw_token, path = guest_access.issue_guest_token(BOOKING_ID.lower(), "  GUEST@example.COM ")

    assert raw_token
    assert path == f"/manage/{BOOKING_ID}?token={raw_token}"
    stored = db.get(Appointment, guest_booking.id)
    assert stored.guest_token_hash == hash_token(raw_token)
    assert stored.guest_token_hash != raw_token
    assert stored.guest_token_expires_at > utcnow() + timedelta(minutes=14)


def test_no_token_for_mismatched_email_or_unknown_booking(guest_access, guest_booking):
    assert guest_access.issue_guest_token(BOOKING_ID, "someone@else.com") == (None, None)
    assert guest_access.issue_guest_token("BK-NOT-THE-RE1", "guest@example.com") == (None, None)


def test_customer_bookings_have_no_guest_access(guest_access, book, slot_at):
    book(*slot_at(11), "BK-CUS-AAA-111", customer_id="cust-1")

    assert guest_access.issue_guest_token("BK-CUS-AAA-111", "") == (None, None)


def test_viewing_does_not_consume_the_token(guest_access, guest_booking):
    raw_token, _ = guest_access.issue_guest_token(BOOKING_ID, "guest@example.com")

    first = guest_access.view_with_token(BOOKING_ID, raw_token)
    second = guest_access.view_with_token(BOOKING_ID, raw_token)

    assert first.id == second.id == guest_booking.id
    with pytest.raises(InvalidGuestToken):
        guest_access.view_with_token(BOOKING_ID, "not-the-token")


def test_cancel_consumes_the_token(db, guest_access, guest_booking, notifier):
    raw_token, _ = guest_access.issue_guest_token(BOOKING_ID, "guest@example.com")

    canceled = guest_access.cancel_with_token(BOOKING_ID, raw_token)

    assert canceled.status == "canceled"
    assert canceled.deleted_at is not None
    assert canceled.version == 2
    assert canceled.guest_token_hash is None
    assert ("appointment.canceled", BOOKING_ID) in notifier.events

    entry = db.query(AuditLog).filter_by(appointment_id=guest_booking.id, action="canceled").one()
    assert entry.actor_id is None
    assert entry.new_state["canceled_by"] == "guest"

    with pytest.raises(InvalidGuestToken):
        guest_access.cancel_with_token(BOOKING_ID, raw_token)


def test_expired_token_is_rejected(db, guest_access, guest_booking):
    raw_token, _ = guest_access.issue_guest_token(BOOKING_ID, "guest@example.com")
    db.execute(
        update(Appointment)
        .where(Appointment.id == guest_booking.id)
        .values(guest_token_expires_at=utcnow() - timedelta(seconds=1))
    )
    db.commit()

    with pytest.raises(InvalidGuestToken):
        guest_access.view_with_token(BOOKING_ID, raw_token)
    with pytest.raises(InvalidGuestToken):
        guest_access.cancel_with_token(BOOKING_ID, raw_token)


def test_cancel_of_completed_appointment_is_refused(guest_access, appointments, guest_booking):
    raw_token, _ = guest_access.issue_guest_token(BOOKING_ID, "guest@example.com")
    appointments.update_status(guest_booking.id, BUSINESS_ID, "completed")

    with pytest.raises(InvalidTransition):
        guest_access.cancel_with_token(BOOKING_ID, raw_token)

    # A refused mutation leaves the link usable
    assert guest_access.view_with_token(BOOKING_ID, raw_token).status == "completed"


def test_reschedule_snaps_and_consumes_the_token(db, guest_access, guest_booking, slot_at, notifier):
    raw_token, _ = guest_access.issue_guest_token(BOOKING_ID, "guest@example.com")
    new_start, new_end = slot_at(14, minute=2)

    moved = guest_access.reschedule_with_token(BOOKING_ID, raw_token, new_start, new_end, 1)

    assert moved.slot_start == slot_at(14)[0]
    assert moved.slot_end == slot_at(14)[1]
    assert moved.version == 2
    assert moved.guest_token_hash is None
    assert ("appointment.rescheduled", BOOKING_ID) in notifier.events
    entry = db.query(AuditLog).filter_by(appointment_id=guest_booking.id, action="rescheduled").one()
    assert entry.new_state["modified_by"] == "guest"

    with pytest.raises(InvalidGuestToken):
        guest_access.reschedule_with_token(BOOKING_ID, raw_token, *slot_at(15), 1)


def test_reschedule_must_keep_duration_and_stay_in_the_future(guest_access, guest_booking, slot_at):
    raw_token, _ = guest_access.issue_guest_token(BOOKING_ID, "guest@example.com")

    with pytest.raises(ValidationError) as exc:
        guest_access.reschedule_with_token(BOOKING_ID, raw_token, *slot_at(14, minutes=60), 1)
    assert "new_slot_end" in exc.value.fields

    past_start = utcnow() - timedelta(hours=2)
    with pytest.raises(ValidationError) as exc:
        guest_access.reschedule_with_token(
            BOOKING_ID, raw_token, past_start, past_start + timedelta(minutes=30), 1
        )
    assert "new_slot_start" in exc.value.fields

    # Still valid after validation failures
    assert guest_access.view_with_token(BOOKING_ID, raw_token).id == guest_booking.id


def test_reschedule_into_a_full_slot(guest_access, guest_booking, book, slot_at):
    book(*slot_at(14), "BK-FUL-AAA-111")
    raw_token, _ = guest_access.issue_guest_token(BOOKING_ID, "guest@example.com")

    with pytest.raises(CapacityExceeded):
        guest_access.reschedule_with_token(BOOKING_ID, raw_token, *slot_at(14), 1)

    current = guest_access.view_with_token(BOOKING_ID, raw_token)
    assert current.slot_start == slot_at(10)[0]
    assert current.service_id == SERVICE_ID
