import threading
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from slotbook.domain.booking.errors import (
    CapacityExceeded,
    InvalidSlot,
    ReservationExpired,
    ReservationNotFound,
    ValidationError,
)
from slotbook.domain.booking.reservation_service import ReservationService
from slotbook.models import Reservation, utcnow

from conftest import BUSINESS_ID, GROUP_SERVICE_ID, SERVICE_ID


def expire(db, reservation_id):
    db.execute(
        update(Reservation)
        .where(Reservation.id == reservation_id)
        .values(expires_at=utcnow() - timedelta(seconds=1))
    )
    db.commit()


def test_hold_is_granted_with_default_ttl(hold, slot_at):
    start, end = slot_at(10)
    before = utcnow()

    reservation = hold(start, end, "k1")

    assert reservation.slot_start == start
    assert reservation.slot_end == end
    assert reservation.max_simultaneous_bookings == 1
    assert before + timedelta(minutes=14) < reservation.expires_at <= utcnow() + timedelta(minutes=15)


def test_ttl_is_clamped(reservations, slot_at):
    start, end = slot_at(10)

    reservation = reservations.create_reservation(BUSINESS_ID, SERVICE_ID, start, end, "k1", 1, ttl_minutes=120)

    assert reservation.expires_at - reservation.created_at == timedelta(minutes=30)


def test_same_idempotency_key_returns_same_hold(hold, reservations, slot_at):
    start, end = slot_at(10)

    first = hold(start, end, "k1", capacity=2)
    second = hold(start, end, "k1", capacity=2)

    assert first.id == second.id
    assert reservations.get_available_capacity(BUSINESS_ID, SERVICE_ID, start, end, 2) == 1


def test_idempotency_key_is_scoped_to_the_exact_slot(hold, slot_at):
    start, end = slot_at(10)
    later_start, later_end = slot_at(11)

    first = hold(start, end, "k1")
    second = hold(later_start, later_end, "k1")

    assert first.id != second.id


def test_full_slot_raises_capacity_exceeded(hold, slot_at):
    start, end = slot_at(10)
    hold(start, end, "k1")

    with pytest.raises(CapacityExceeded) as exc:
        hold(start, end, "k2")
    assert exc.value.retryable
    assert exc.value.http_status == 409


def test_overlapping_hold_counts_against_capacity(hold, slot_at):
    start, end = slot_at(10, minutes=60)
    hold(start, end, "k1")

    overlap_start, overlap_end = slot_at(10, minute=30)
    with pytest.raises(CapacityExceeded):
        hold(overlap_start, overlap_end, "k2")

    adjacent_start, adjacent_end = slot_at(11)
    assert hold(adjacent_start, adjacent_end, "k3").id


def test_capacity_is_per_service(hold, slot_at):
    start, end = slot_at(10)
    hold(start, end, "k1")

    assert hold(start, end, "k2", capacity=3, service_id=GROUP_SERVICE_ID).id


def test_invalid_input(reservations, slot_at):
    start, end = slot_at(10)

    with pytest.raises(InvalidSlot):
        reservations.create_reservation(BUSINESS_ID, SERVICE_ID, end, start, "k1", 1)
    with pytest.raises(ValidationError) as exc:
        reservations.create_reservation(BUSINESS_ID, "", start, end, " ", 1)
    assert set(exc.value.fields) == {"service_id", "idempotency_key"}
    with pytest.raises(ValidationError):
        reservations.create_reservation(BUSINESS_ID, SERVICE_ID, start, end, "k1", 0)


def test_expired_hold_frees_capacity(db, hold, reservations, slot_at):
    start, end = slot_at(10)
    reservation = hold(start, end, "k1")
    assert reservations.get_available_capacity(BUSINESS_ID, SERVICE_ID, start, end, 1) == 0

    expire(db, reservation.id)

    assert reservations.get_available_capacity(BUSINESS_ID, SERVICE_ID, start, end, 1) == 1
    assert hold(start, end, "k2").id != reservation.id


def test_expired_hold_with_same_key_is_replaced(db, hold, slot_at):
    start, end = slot_at(10)
    first = hold(start, end, "k1")
    expire(db, first.id)

    second = hold(start, end, "k1")

    assert second.id != first.id
    assert db.execute(select(Reservation)).scalars().all() == [second]


def test_cleanup_deletes_only_expired(db, hold, reservations, slot_at):
    start, end = slot_at(10)
    stale = hold(start, end, "k1", capacity=2)
    live = hold(start, end, "k2", capacity=2)
    expire(db, stale.id)

    assert reservations.cleanup_expired_reservations() == 1
    assert reservations.cleanup_expired_reservations() == 0
    remaining = db.execute(select(Reservation.id)).scalars().all()
    assert remaining == [live.id]


def test_validate_reservation(db, hold, reservations, slot_at):
    start, end = slot_at(10)
    reservation = hold(start, end, "k1")

    assert reservations.validate_reservation(reservation.id).id == reservation.id
    with pytest.raises(ReservationNotFound):
        reservations.validate_reservation("missing")

    expire(db, reservation.id)
    with pytest.raises(ReservationExpired):
        reservations.validate_reservation(reservation.id)


def test_release_reservation(hold, reservations, slot_at):
    start, end = slot_at(10)
    reservation = hold(start, end, "k1")

    assert reservations.release_reservation(reservation.id) is True
    assert reservations.release_reservation(reservation.id) is False
    assert reservations.get_available_capacity(BUSINESS_ID, SERVICE_ID, start, end, 1) == 1


def test_extend_reservation_is_capped_from_creation(hold, reservations, slot_at):
    start, end = slot_at(10)
    reservation = hold(start, end, "k1")
    created_at = reservation.created_at

    extended = reservations.extend_reservation(reservation.id, 10)
    assert extended.expires_at == created_at + timedelta(minutes=25)

    extended = reservations.extend_reservation(reservation.id, 10)
    assert extended.expires_at == created_at + timedelta(minutes=30)

    with pytest.raises(ValidationError):
        reservations.extend_reservation(reservation.id, 0)


def test_extend_expired_reservation_fails(db, hold, reservations, slot_at):
    start, end = slot_at(10)
    reservation = hold(start, end, "k1")
    expire(db, reservation.id)

    with pytest.raises(ReservationExpired):
        reservations.extend_reservation(reservation.id, 5)


@pytest.mark.parametrize("capacity,extra", [(1, 4), (3, 5)])
def test_concurrent_holds_never_overbook(session_factory, slot_at, capacity, extra):
    start, end = slot_at(10)
    callers = capacity + extra
    barrier = threading.Barrier(callers)
    outcomes = []
    lock = threading.Lock()

    def attempt(index):
        session = session_factory()
        try:
            barrier.wait()
            ReservationService(session).create_reservation(
                BUSINESS_ID, SERVICE_ID, start, end, f"key-{index}", capacity
            )
            result = "granted"
        except CapacityExceeded:
            result = "full"
        except Exception as e:  # surfaced through the assertion below
            result = repr(e)
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(outcomes) == sorted(["granted"] * capacity + ["full"] * extra)


def test_concurrent_retries_with_same_key_share_one_hold(session_factory, slot_at):
    start, end = slot_at(10)
    barrier = threading.Barrier(4)
    ids = []
    lock = threading.Lock()

    def attempt():
        session = session_factory()
        try:
            barrier.wait()
            reservation = ReservationService(session).create_reservation(
                BUSINESS_ID, SERVICE_ID, start, end, "same-key", 2
            )
            with lock:
                ids.append(reservation.id)
        finally:
            session.close()

    threads = [threading.Thread(target=attempt) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert len(ids) == 4
    assert len(set(ids)) == 1
