"""Booking domain - reservations (holds), appointments, guest self-service and the reaper

Layout:
    slots.py               Slot/Capacity value types
    state_machine.py       appointment status transitions
    repository.py          database operations (flush only, never commit)
    reservation_service.py hold admission, release, extension, expiry
    appointment_service.py commit, status changes, reschedule, manual bookings
    guest_access.py        token-authenticated guest view/cancel/reschedule
    cleanup.py             reservation reaper and health report
    router.py              /booking endpoints
"""
