from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from slotbook.auth import (
    Actor,
    get_current_actor,
    get_current_customer,
    get_current_owner,
    require_owner,
    verify_jwt_token,
)

from conftest import make_token


def credentials(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_token_claims_become_an_actor():
    token = make_token({"sub": "owner-1", "role": "owner", "business_id": "biz-1"})

    actor = get_current_actor(credentials(token))

    assert actor == Actor(user_id="owner-1", role="owner", business_id="biz-1")
    assert verify_jwt_token(token + "x") is None


def test_role_defaults_to_customer():
    actor = get_current_actor(credentials(make_token({"sub": "cust-1"})))

    assert actor.is_customer
    assert get_current_customer(actor) is actor


def test_expired_or_subjectless_tokens_are_rejected():
    expired = make_token({"sub": "owner-1"}, expires_delta=timedelta(minutes=-1))
    with pytest.raises(HTTPException) as exc:
        get_current_actor(credentials(expired))
    assert exc.value.status_code == 401

    with pytest.raises(HTTPException):
        get_current_actor(credentials(make_token({"role": "owner"})))


def test_require_owner_checks_business():
    owner = Actor(user_id="owner-1", role="owner", business_id="biz-1")

    assert require_owner(owner, "biz-1") is owner
    with pytest.raises(HTTPException) as exc:
        require_owner(owner, "biz-2")
    assert exc.value.status_code == 403
    with pytest.raises(HTTPException):
        require_owner(Actor(user_id="c-1", role="customer", business_id="biz-1"), "biz-1")


def test_role_gates():
    owner = Actor(user_id="owner-1", role="owner", business_id="biz-1")
    customer = Actor(user_id="cust-1", role="customer")

    assert get_current_owner(owner) is owner
    with pytest.raises(HTTPException):
        get_current_owner(customer)
    with pytest.raises(HTTPException):
        get_current_owner(Actor(user_id="owner-9", role="owner"))
    with pytest.raises(HTTPException) as exc:
        get_current_customer(owner)
    assert exc.value.status_code == 403
