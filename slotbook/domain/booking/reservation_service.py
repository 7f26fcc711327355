"""Reservation service - time-limited, capacity-checked holds on a slot

Admission runs as one transaction per request:

1. take the per-service slot lock (serializes concurrent admissions),
2. re-check the idempotency key,
3. count confirmed appointments + unexpired holds overlapping the slot,
4. insert the hold or raise CapacityExceeded.

The capacity ceiling is always passed in by the caller (tenant configuration
is the source of truth); nothing here looks it up.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import RESERVATION_TTL_MAX_MINUTES
from ...models import Reservation, utcnow
from .errors import (
    CapacityExceeded,
    ReservationExpired,
    ReservationNotFound,
    ValidationError,
)
from .repository import BookingRepository, translate_store_errors
from .slots import Capacity, Slot, clamp_ttl

logger = logging.getLogger(__name__)


def _require(fields: dict[str, str], name: str, value) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        fields[name] = "is required"


class ReservationService:
    """Service layer for reservation (hold) logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BookingRepository()

    def create_reservation(
        self,
        business_id: str,
        service_id: str,
        slot_start: datetime,
        slot_end: datetime,
        idempotency_key: str,
        max_simultaneous_bookings: int,
        ttl_minutes: Optional[int] = None,
    ) -> Reservation:
        """
        Grant a hold on [slot_start, slot_end) or raise CapacityExceeded.

        Retrying with the same business, service, slot and idempotency key returns
        the existing unexpired hold without consuming more capacity.
        """
        fields: dict[str, str] = {}
        _require(fields, "business_id", business_id)
        _require(fields, "service_id", service_id)
        _require(fields, "idempotency_key", idempotency_key)
        _require(fields, "slot_start", slot_start)
        _require(fields, "slot_end", slot_end)
        if fields:
            raise ValidationError(fields)

        slot = Slot(business_id, service_id, slot_start, slot_end)
        capacity = Capacity(max_simultaneous_bookings)
        ttl = clamp_ttl(ttl_minutes)
        now = utcnow()

        with translate_store_errors(self.db, "create_reservation"):
            existing = self.repo.find_idempotent_reservation(
                self.db, slot.business_id, slot.service_id, slot.start, slot.end, idempotency_key, now
            )
            if existing:
                logger.info(f"♻️ Idempotent hold hit: reservation {existing.id} (key={idempotency_key})")
                return existing

            try:
                reservation = self._admit(slot, capacity, idempotency_key, ttl, now)
            except IntegrityError:
                self.db.rollback()
                winner = self.repo.find_idempotent_reservation(
                    self.db,
                    slot.business_id,
                    slot.service_id,
                    slot.start,
                    slot.end,
                    idempotency_key,
                    utcnow(),
                )
                if winner:
                    logger.info(f"♻️ Concurrent retry resolved to reservation {winner.id}")
                    return winner
                logger.warning(
                    f"⚠️ Reservation insert conflict for {slot.service_id} at {slot.start}, treating as full"
                )
                raise CapacityExceeded() from None

        self._opportunistic_cleanup()
        return reservation

    def _admit(
        self, slot: Slot, capacity: Capacity, idempotency_key: str, ttl: int, now: datetime
    ) -> Reservation:
        self.repo.acquire_slot_lock(self.db, slot.business_id, slot.service_id)

        # Re-check under the lock; a concurrent retry may have just committed
        existing = self.repo.find_idempotent_reservation(
            self.db, slot.business_id, slot.service_id, slot.start, slot.end, idempotency_key, now
        )
        if existing:
            self.db.commit()
            return existing

        active = self.repo.count_active_bookings(
            self.db, slot.business_id, slot.service_id, slot.start, slot.end, now
        )
        if not capacity.admits(active):
            self.db.rollback()
            logger.info(
                f"🚫 Slot full: {slot.business_id}/{slot.service_id} {slot.start}-{slot.end} "
                f"({active}/{capacity.max_simultaneous_bookings})"
            )
            raise CapacityExceeded()

        # An expired hold with the same key would still trip the unique constraint
        self.repo.delete_stale_idempotent_reservation(
            self.db, slot.business_id, slot.service_id, slot.start, slot.end, idempotency_key, now
        )

        reservation = self.repo.create_reservation(
            self.db,
            business_id=slot.business_id,
            service_id=slot.service_id,
            slot_start=slot.start,
            slot_end=slot.end,
            idempotency_key=idempotency_key,
            expires_at=now + timedelta(minutes=ttl),
            max_simultaneous_bookings=capacity.max_simultaneous_bookings,
            created_at=now,
        )
        self.db.commit()
        logger.info(
            f"✅ Hold {reservation.id} granted for {slot.service_id} at {slot.start} "
            f"({active + 1}/{capacity.max_simultaneous_bookings}, ttl={ttl}m)"
        )
        return reservation

    def _opportunistic_cleanup(self) -> None:
        """Sweep expired holds if the cron reaper looks stalled. Never fails the request."""
        from .cleanup import run_fallback_cleanup

        try:
            run_fallback_cleanup(self.db)
        except Exception as e:
            logger.error(f"❌ Opportunistic reservation cleanup failed: {e}")

    def get_available_capacity(
        self,
        business_id: str,
        service_id: str,
        slot_start: datetime,
        slot_end: datetime,
        max_simultaneous_bookings: int,
    ) -> int:
        """Remaining units for the interval, counted exactly as admission counts them"""
        slot = Slot(business_id, service_id, slot_start, slot_end)
        capacity = Capacity(max_simultaneous_bookings)

        with translate_store_errors(self.db, "get_available_capacity"):
            active = self.repo.count_active_bookings(
                self.db, slot.business_id, slot.service_id, slot.start, slot.end, utcnow()
            )
            self.db.rollback()
        return capacity.remaining(active)

    def validate_reservation(self, reservation_id: str, now: Optional[datetime] = None) -> Reservation:
        """Return the hold if it exists and is unexpired"""
        now = now or utcnow()
        with translate_store_errors(self.db, "validate_reservation"):
            reservation = self.repo.get_reservation(self.db, reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id=reservation_id)
        if reservation.expires_at <= now:
            raise ReservationExpired(reservation_id=reservation_id)
        return reservation

    def release_reservation(self, reservation_id: str) -> bool:
        """Explicitly give a hold back (customer abandoned checkout)"""
        with translate_store_errors(self.db, "release_reservation"):
            deleted = self.repo.delete_reservation(self.db, reservation_id)
            self.db.commit()
        if deleted:
            logger.info(f"🔓 Reservation {reservation_id} released")
        return bool(deleted)

    def extend_reservation(self, reservation_id: str, additional_minutes: int) -> Reservation:
        """
        Push the expiry of a still-valid hold. The total lifetime never exceeds the
        maximum TTL counted from creation.
        """
        if additional_minutes is None or additional_minutes <= 0:
            raise ValidationError({"additional_minutes": "must be a positive integer"})

        now = utcnow()
        reservation = self.validate_reservation(reservation_id, now)
        ceiling = reservation.created_at + timedelta(minutes=RESERVATION_TTL_MAX_MINUTES)
        new_expires_at = min(reservation.expires_at + timedelta(minutes=additional_minutes), ceiling)

        with translate_store_errors(self.db, "extend_reservation"):
            updated = self.repo.extend_reservation(self.db, reservation_id, new_expires_at, now)
            if not updated:
                self.db.rollback()
                raise ReservationExpired(reservation_id=reservation_id)
            self.db.commit()

        self.db.refresh(reservation)
        logger.info(f"⏳ Reservation {reservation_id} extended to {reservation.expires_at}")
        return reservation

    def cleanup_expired_reservations(self) -> int:
        """Delete every hold whose expiry has passed; returns how many went"""
        with translate_store_errors(self.db, "cleanup_expired_reservations"):
            deleted = self.repo.delete_expired_reservations(self.db, utcnow())
            self.db.commit()
        if deleted:
            logger.info(f"🧹 Deleted {deleted} expired reservations")
        return deleted
