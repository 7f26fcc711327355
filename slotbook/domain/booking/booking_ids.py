"""Human-facing booking references"""

import secrets

BOOKING_ID_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
BOOKING_ID_PREFIX = "BK"


def generate_booking_id() -> str:
    """Return a reference like BK-7QF-2KD-9XA (9 random symbols)"""
    code = "".join(secrets.choice(BOOKING_ID_ALPHABET) for _ in range(9))
    return f"{BOOKING_ID_PREFIX}-{code[0:3]}-{code[3:6]}-{code[6:9]}"
