"""JWT verification for tokens issued by the dashboard auth service.

Claims used here: ``sub`` (user id), ``agency_id`` (0 for super admins)
and ``role`` (owner, manager, viewer, super_admin).
"""

import logging
from datetime import datetime, timedelta, timezone

import jwt

from app.config import JWT_ALGORITHM, JWT_EXPIRE_HOURS, JWT_SECRET_KEY

logger = logging.getLogger("immopay")

ROLES = ("owner", "manager", "viewer", "super_admin")


def create_access_token(
    user_id: int, agency_id: int, role: str = "owner", expire_hours: int | None = None
) -> str:
    """Issue a token with the dashboard's claims (used by tooling and tests)."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "agency_id": agency_id,
        "role": role,
        "iat": now,
        "exp": now + timedelta(hours=expire_hours or JWT_EXPIRE_HOURS),
    }
    return jwt.encode(claims, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict | None:
    """Verified claims, or None for an invalid, expired or foreign token."""
    try:
        payload = jwt.decode(
            token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM], options={"require": ["exp", "sub"]}
        )
    except jwt.ExpiredSignatureError:
        logger.debug("Rejected expired token")
        return None
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected token: %s", exc)
        return None

    role = payload.get("role") or "viewer"
    if role not in ROLES:
        logger.warning("Rejected token for user %s with unknown role %s", payload["sub"], role)
        return None
    try:
        agency_id = int(payload.get("agency_id") or 0)
    except (TypeError, ValueError):
        logger.warning("Rejected token for user %s with agency_id %r", payload["sub"], payload.get("agency_id"))
        return None

    payload["role"] = role
    payload["agency_id"] = agency_id
    return payload
