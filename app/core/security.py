from __future__ import annotations

from datetime import timedelta
from typing import Any

import bcrypt
import jwt

from app.core.clock import Clock, utcnow
from app.core.config import settings

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    pass


# -------------------------
# Password hashing (bcrypt)
# -------------------------
def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


# -------------------------
# JWT tokens
# -------------------------
def _issue(user_id: str, token_type: str, ttl: timedelta, clock: Clock, **claims: Any) -> str:
    now = clock()
    payload = {
        "sub": user_id,
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
        **claims,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def create_access_token(*, user_id: str, role: str, clock: Clock = utcnow) -> str:
    return _issue(user_id, ACCESS, timedelta(minutes=settings.JWT_ACCESS_MINUTES), clock, role=role)


def create_refresh_token(*, user_id: str, clock: Clock = utcnow) -> str:
    return _issue(user_id, REFRESH, timedelta(days=settings.JWT_REFRESH_DAYS), clock)


def issue_token_pair(*, user_id: str, role: str) -> dict[str, str]:
    return {
        "access_token": create_access_token(user_id=user_id, role=role),
        "refresh_token": create_refresh_token(user_id=user_id),
        "token_type": "bearer",
    }


def decode_token(token: str, *, expected_type: str | None = None) -> dict:
    """Verify signature and expiry; with ``expected_type`` also the ``type`` claim."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.ExpiredSignatureError as e:
        raise TokenError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenError("Invalid token") from e

    if expected_type is not None and payload.get("type") != expected_type:
        raise TokenError(f"{expected_type.capitalize()} token required")
    if not payload.get("sub"):
        raise TokenError("Token missing user id (sub)")
    return payload
