"""Per-request identity resolution. Anything without a valid bearer token is the guest."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
from fastapi import Header

from agrovision.core.config import settings

logger = logging.getLogger(__name__)

GUEST_USER_ID = "guest"


def create_access_token(user_id: str, expires_days: Optional[int] = None) -> str:
    days = settings.token_expiry_days if expires_days is None else expires_days
    payload = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(days=days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[dict[str, Any]]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        logger.debug(f"Rejected access token: {e}")
        return None


def user_id_from_authorization(authorization: Optional[str]) -> str:
    if not authorization:
        return GUEST_USER_ID
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return GUEST_USER_ID
    claims = decode_access_token(token.strip())
    if not claims or not claims.get("sub"):
        return GUEST_USER_ID
    return str(claims["sub"])


async def resolve_user_id(authorization: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency returning the caller's user id, or the guest sentinel."""
    return user_id_from_authorization(authorization)
