import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./slotbook.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Shared secret the external scheduler sends as "Authorization: Bearer <secret>"
CRON_SECRET = os.getenv("CRON_SECRET")

# Reservation (hold) lifetime in minutes
RESERVATION_DEFAULT_TTL_MINUTES = int(os.getenv("RESERVATION_DEFAULT_TTL_MINUTES", "15"))
RESERVATION_TTL_MIN_MINUTES = int(os.getenv("RESERVATION_TTL_MIN_MINUTES", "5"))
RESERVATION_TTL_MAX_MINUTES = int(os.getenv("RESERVATION_TTL_MAX_MINUTES", "30"))

# Guest self-service links
GUEST_TOKEN_TTL_MINUTES = int(os.getenv("GUEST_TOKEN_TTL_MINUTES", "15"))
GUEST_TOKEN_RATE_LIMIT = int(os.getenv("GUEST_TOKEN_RATE_LIMIT", "10"))
GUEST_TOKEN_RATE_WINDOW_SECONDS = int(os.getenv("GUEST_TOKEN_RATE_WINDOW_SECONDS", "900"))

# Reaper thresholds
FALLBACK_CLEANUP_THRESHOLD = int(os.getenv("FALLBACK_CLEANUP_THRESHOLD", "50"))
CLEANUP_ANOMALY_THRESHOLD = int(os.getenv("CLEANUP_ANOMALY_THRESHOLD", "100"))
CLEANUP_CRITICAL_THRESHOLD = int(os.getenv("CLEANUP_CRITICAL_THRESHOLD", "500"))
CLEANUP_STALE_AFTER_MINUTES = int(os.getenv("CLEANUP_STALE_AFTER_MINUTES", "15"))

# Tenant capacity overrides, JSON: {"<business_id>:<service_id>": 3, "<business_id>:*": 2}
# The tenant configuration loader owns these values; this is the local stand-in.
TENANT_CAPACITY_JSON = os.getenv("TENANT_CAPACITY_JSON", "{}")
DEFAULT_MAX_SIMULTANEOUS_BOOKINGS = int(os.getenv("DEFAULT_MAX_SIMULTANEOUS_BOOKINGS", "1"))

# Service slugs accepted at the HTTP boundary, JSON: {"<business_id>:<slug>": "<service_id>"}
TENANT_SERVICE_ALIASES_JSON = os.getenv("TENANT_SERVICE_ALIASES_JSON", "{}")
