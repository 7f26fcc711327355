"""
Reservation reaper.

Three triggers share this module: the ARQ cron job (every 5 minutes), the
credential-free fallback endpoint, and the opportunistic call made after a
hold is granted. Each run records its count and duration in system_metrics.
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import (
    CLEANUP_ANOMALY_THRESHOLD,
    CLEANUP_CRITICAL_THRESHOLD,
    CLEANUP_STALE_AFTER_MINUTES,
    FALLBACK_CLEANUP_THRESHOLD,
)
from ...models import utcnow
from .repository import BookingRepository, translate_store_errors
from .slots import to_utc_aware

logger = logging.getLogger(__name__)

CLEANUP_COUNT_METRIC = "reservation_cleanup_count"
CLEANUP_DURATION_METRIC = "reservation_cleanup_duration_ms"
CLEANUP_FAILURE_METRIC = "reservation_cleanup_failure"


@dataclass
class CleanupResult:
    deleted_count: int
    duration_ms: int
    trigger: str
    anomalous: bool = False
    skipped: bool = False
    expired_count: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _sweep(db: Session, trigger: str) -> CleanupResult:
    started = time.monotonic()
    try:
        with translate_store_errors(db, f"{trigger} cleanup"):
            deleted = BookingRepository.delete_expired_reservations(db, utcnow())
            duration_ms = int((time.monotonic() - started) * 1000)
            anomalous = deleted > CLEANUP_ANOMALY_THRESHOLD
            details = {"trigger": trigger}
            BookingRepository.record_metric(db, CLEANUP_COUNT_METRIC, deleted, details)
            BookingRepository.record_metric(db, CLEANUP_DURATION_METRIC, duration_ms, details)
            db.commit()
    except Exception as e:
        db.rollback()
        _record_failure(db, trigger, e)
        raise

    if anomalous:
        logger.warning(
            f"⚠️ Reservation cleanup ({trigger}) removed {deleted} rows, above the "
            f"{CLEANUP_ANOMALY_THRESHOLD} anomaly threshold"
        )
    else:
        logger.info(f"🧹 Reservation cleanup ({trigger}) removed {deleted} rows in {duration_ms}ms")

    return CleanupResult(
        deleted_count=deleted, duration_ms=duration_ms, trigger=trigger, anomalous=anomalous
    )


def _record_failure(db: Session, trigger: str, error: Exception) -> None:
    logger.error(f"❌ Reservation cleanup ({trigger}) failed: {error}")
    try:
        BookingRepository.record_metric(
            db, CLEANUP_FAILURE_METRIC, 1, {"trigger": trigger, "error": str(error)}
        )
        db.commit()
    except SQLAlchemyError as metric_error:
        db.rollback()
        logger.error(f"❌ Could not record cleanup failure metric: {metric_error}")


def run_scheduled_cleanup(db: Session) -> CleanupResult:
    """Unconditional sweep, run by the cron job"""
    return _sweep(db, "cron")


def run_fallback_cleanup(db: Session, threshold: int = FALLBACK_CLEANUP_THRESHOLD) -> CleanupResult:
    """Sweep only when expired holds have piled up past ``threshold``"""
    with translate_store_errors(db, "fallback cleanup check"):
        expired = BookingRepository.count_expired_reservations(db, utcnow())
        db.rollback()

    if expired <= threshold:
        return CleanupResult(
            deleted_count=0, duration_ms=0, trigger="fallback", skipped=True, expired_count=expired
        )

    logger.warning(f"⚠️ {expired} expired reservations pending (threshold {threshold}), running fallback cleanup")
    result = _sweep(db, "fallback")
    result.expired_count = expired
    return result


def get_reservation_health(db: Session) -> dict:
    """Reservation table and reaper health, as served by the health endpoint"""
    now = utcnow()
    with translate_store_errors(db, "reservation health"):
        active = BookingRepository.count_active_reservations(db, now)
        expired = BookingRepository.count_expired_reservations(db, now)
        businesses = BookingRepository.count_businesses_with_reservations(db)
        oldest_expired = BookingRepository.oldest_expired_reservation_at(db, now)
        last_cleanup = BookingRepository.latest_metric(db, CLEANUP_COUNT_METRIC)
        db.rollback()

    minutes_since_cleanup = None
    if last_cleanup is not None:
        minutes_since_cleanup = int((now - last_cleanup.recorded_at).total_seconds() // 60)

    status = "healthy"
    warnings = []
    if expired > CLEANUP_ANOMALY_THRESHOLD:
        status = "warning"
        warnings.append(f"High expired reservation count: {expired}")
    if minutes_since_cleanup is not None and minutes_since_cleanup > CLEANUP_STALE_AFTER_MINUTES:
        status = "warning"
        warnings.append(
            f"Cleanup job hasn't run in {minutes_since_cleanup} minutes (expected every 5 minutes)"
        )
    if expired > CLEANUP_CRITICAL_THRESHOLD:
        status = "critical"
        warnings.append(
            f"CRITICAL: Expired reservation count exceeds {CLEANUP_CRITICAL_THRESHOLD} - cleanup job may be failing"
        )

    return {
        "status": status,
        "warnings": warnings,
        "metrics": {
            "active_reservations": active,
            "expired_reservations": expired,
            "businesses_with_reservations": businesses,
            "oldest_expired_at": to_utc_aware(oldest_expired).isoformat() if oldest_expired else None,
            "last_cleanup_at": to_utc_aware(last_cleanup.recorded_at).isoformat() if last_cleanup else None,
            "last_cleanup_count": int(last_cleanup.metric_value) if last_cleanup else 0,
            "minutes_since_cleanup": minutes_since_cleanup,
        },
        "timestamp": to_utc_aware(now).isoformat(),
    }
