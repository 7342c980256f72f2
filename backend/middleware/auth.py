"""
Bearer token authentication.

Login and session management live in the storefront's identity service;
this API only verifies the short-lived HS256 access tokens it issues:
    sub  - user id
    role - "buyer" or "admin"

Checkout endpoints accept anonymous callers (guest checkout) and attach
the buyer id when a valid token is present. Admin endpoints require a
token with role "admin".
"""
import logging
from datetime import datetime, timezone, timedelta
from fastapi import Depends, Header
from typing import Optional

import jwt

from config import settings
from domain.errors import AuthMisconfiguredError, PermissionDeniedError, UnauthorizedError

logger = logging.getLogger(__name__)

ROLE_BUYER = "buyer"
ROLE_ADMIN = "admin"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise AuthMisconfiguredError()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "iss", "sub"]},
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Access token expired.")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid access token.")


def issue_access_token(*, user_id: str, role: str) -> str:
    now = _now_utc()
    exp = now.replace(microsecond=0) + timedelta(minutes=settings.jwt_access_ttl_minutes)
    payload = {
        "iss": settings.jwt_issuer,
        "sub": user_id,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    if not settings.jwt_secret:
        raise AuthMisconfiguredError()
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


async def get_token_claims(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Optional[dict]:
    token = _parse_bearer_token(authorization)
    if not token:
        return None
    return decode_access_token(token)


async def get_optional_buyer(claims: Optional[dict] = Depends(get_token_claims)) -> Optional[str]:
    """User id of a signed-in caller, or None for guest checkout."""
    if not claims:
        return None
    return claims.get("sub")


async def require_admin(claims: Optional[dict] = Depends(get_token_claims)) -> str:
    if not claims:
        raise UnauthorizedError("Authentication required. Provide Authorization: Bearer <token>.")
    if claims.get("role") != ROLE_ADMIN:
        logger.warning(f"Non-admin user {claims.get('sub')} tried an admin endpoint")
        raise PermissionDeniedError("Admin role required for this endpoint.")
    return claims["sub"]
