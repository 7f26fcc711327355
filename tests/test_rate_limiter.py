from unittest.mock import MagicMock

import pytest
import redis
from fastapi import HTTPException
from starlette.requests import Request

from slotbook import rate_limiter
from slotbook.rate_limiter import (
    check_rate_limit,
    create_rate_limiter,
    get_client_ip,
    guest_token_rate_limit,
)


@pytest.fixture(autouse=True)
def clean_cache(monkeypatch):
    rate_limiter.memory_cache.clear()
    monkeypatch.setattr(rate_limiter, "get_redis_client", lambda: None)
    yield
    rate_limiter.memory_cache.clear()


def make_request(ip="203.0.113.7", forwarded=None):
    headers = []
    if forwarded:
        headers.append((b"x-forwarded-for", forwarded.encode()))
    return Request({"type": "http", "headers": headers, "client": (ip, 12345), "path": "/"})


def test_memory_only_window():
    results = [check_rate_limit("k", 3, 60, None) for _ in range(4)]

    assert [allowed for allowed, _, _ in results] == [True, True, True, False]
    assert results[2][1] == 3
    assert 0 < results[3][2] <= 60


def test_window_is_seeded_from_redis():
    client = MagicMock()
    client.get.return_value = "4"
    client.ttl.return_value = 30

    allowed, count, ttl = check_rate_limit("seeded", 5, 60, client)

    assert allowed
    assert count == 5
    assert ttl <= 30
    assert not check_rate_limit("seeded", 5, 60, client)[0]


def test_redis_errors_fall_back_to_memory():
    client = MagicMock()
    client.get.side_effect = redis.ConnectionError("down")

    allowed, count, _ = check_rate_limit("flaky", 2, 60, client)

    assert allowed
    assert count == 1


def test_client_ip_prefers_forwarded_header():
    assert get_client_ip(make_request(forwarded="198.51.100.1, 10.0.0.1")) == "198.51.100.1"
    assert get_client_ip(make_request()) == "203.0.113.7"


def test_dependency_raises_429_with_retry_after():
    limiter = create_rate_limiter(limit=2, window_seconds=60, key_prefix="test")
    request = make_request()

    limiter(request)
    limiter(request)
    with pytest.raises(HTTPException) as exc:
        limiter(request)

    assert exc.value.status_code == 429
    assert "Retry-After" in exc.value.headers
    assert exc.value.detail["limit"] == 2


def test_limits_are_per_client():
    limiter = create_rate_limiter(limit=1, window_seconds=60, key_prefix="test")

    limiter(make_request(ip="203.0.113.1"))
    limiter(make_request(ip="203.0.113.2"))
    with pytest.raises(HTTPException):
        limiter(make_request(ip="203.0.113.1"))


def test_guest_token_limit_is_per_booking(monkeypatch):
    monkeypatch.setattr(rate_limiter, "GUEST_TOKEN_RATE_LIMIT", 2)
    request = make_request()

    guest_token_rate_limit(request, "bk-aaa-bbb-ccc")
    guest_token_rate_limit(request, "BK-AAA-BBB-CCC")
    with pytest.raises(HTTPException):
        guest_token_rate_limit(request, "BK-AAA-BBB-CCC")

    guest_token_rate_limit(request, "BK-ZZZ-YYY-XXX")
