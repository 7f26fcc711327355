"""
Bearer JWT authentication.

Tokens are issued by the identity service; this module only verifies them
and turns the claims into an Actor the booking routes can trust.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt

from .config import JWT_ALGORITHM, SECRET_KEY

logger = logging.getLogger(__name__)

security = HTTPBearer()

OWNER_ROLE = "owner"
CUSTOMER_ROLE = "customer"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str
    business_id: Optional[str] = None

    @property
    def is_owner(self) -> bool:
        return self.role == OWNER_ROLE

    @property
    def is_customer(self) -> bool:
        return self.role == CUSTOMER_ROLE


def verify_jwt_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a JWT token

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None


def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """Decode the bearer token into an Actor"""
    payload = verify_jwt_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return Actor(
        user_id=str(payload["sub"]),
        role=payload.get("role", CUSTOMER_ROLE),
        business_id=payload.get("business_id"),
    )


def require_owner(actor: Actor, business_id: str) -> Actor:
    """Only the authenticated owner of ``business_id`` may mutate its appointments"""
    if not actor.is_owner or actor.business_id != business_id:
        logger.warning(f"🔒 Actor {actor.user_id} ({actor.role}) denied access to business {business_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for this business")
    return actor


def get_current_owner(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_owner or not actor.business_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Owner access required")
    return actor


def get_current_customer(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_customer:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This endpoint is for customers only")
    return actor
