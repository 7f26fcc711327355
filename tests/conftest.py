import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite:///./slotbook-test.db")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from slotbook import models  # noqa: F401
from slotbook import rate_limiter
from slotbook.config import JWT_ALGORITHM, SECRET_KEY
from slotbook.database import Base, build_engine, get_db
from slotbook.domain.booking.appointment_service import AppointmentService
from slotbook.domain.booking.reservation_service import ReservationService
from slotbook.domain.booking.tenant_config import TenantConfigProvider, get_tenant_config
from slotbook.models import utcnow

BUSINESS_ID = "biz-1"
SERVICE_ID = "haircut"
GROUP_SERVICE_ID = "group-class"


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def send(self, event, appointment):
        self.events.append((event, appointment.booking_id))


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def reservations(db):
    return ReservationService(db)


@pytest.fixture
def appointments(db, notifier):
    return AppointmentService(db, notifier)


@pytest.fixture
def slot_at():
    """slot_at(hour, minute=0, minutes=30) -> (start, end) tomorrow, naive UTC"""
    day = (utcnow() + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)

    def _slot(hour, minute=0, minutes=30):
        start = day + timedelta(hours=hour, minutes=minute)
        return start, start + timedelta(minutes=minutes)

    return _slot


@pytest.fixture
def hold(reservations):
    """hold(start, end, key, capacity=1, service_id=SERVICE_ID) -> Reservation"""

    def _hold(start, end, key, capacity=1, service_id=SERVICE_ID):
        return reservations.create_reservation(
            business_id=BUSINESS_ID,
            service_id=service_id,
            slot_start=start,
            slot_end=end,
            idempotency_key=key,
            max_simultaneous_bookings=capacity,
        )

    return _hold


@pytest.fixture
def book(hold, appointments):
    """book(start, end, booking_id, capacity=1, **identity) -> confirmed Appointment"""

    def _book(start, end, booking_id, capacity=1, key=None, **identity):
        if not identity:
            identity = {"customer_id": "cust-1"}
        reservation = hold(start, end, key or f"key-{booking_id}", capacity=capacity)
        return appointments.commit_reservation(reservation.id, booking_id, **identity)

    return _book


@pytest.fixture
def tenant_config():
    return TenantConfigProvider(
        capacities={f"{BUSINESS_ID}:*": 1, f"{BUSINESS_ID}:{GROUP_SERVICE_ID}": 3},
        aliases={f"{BUSINESS_ID}:mens-cut": SERVICE_ID},
    )


@pytest.fixture
def client(session_factory, tenant_config, notifier, monkeypatch):
    from slotbook.domain.booking.router import get_notifier
    from slotbook.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr(rate_limiter, "get_redis_client", lambda: None)
    rate_limiter.memory_cache.clear()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_tenant_config] = lambda: tenant_config
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()
    rate_limiter.memory_cache.clear()


def make_token(claims, expires_delta=timedelta(minutes=15)):
    """Stand-in for the identity service that issues access tokens"""
    payload = dict(claims, exp=datetime.now(timezone.utc) + expires_delta)
    return jwt.encode(payload, SECRET_KEY, algorithm=JWT_ALGORITHM)


def auth_headers(user_id="owner-1", role="owner", business_id=BUSINESS_ID):
    token = make_token({"sub": user_id, "role": role, "business_id": business_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def owner_headers():
    return auth_headers()


@pytest.fixture
def other_owner_headers():
    return auth_headers(user_id="owner-2", business_id="biz-2")


@pytest.fixture
def customer_headers():
    return auth_headers(user_id="cust-1", role="customer", business_id=None)
