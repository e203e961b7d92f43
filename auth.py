# auth.py — bearer token verification for the REST and WebSocket surfaces
import logging
import time
from typing import Optional

import jwt

import config

log = logging.getLogger(__name__)


class AuthError(Exception):
    pass


def issue_token(user_id: str, ttl: int = 7 * 24 * 3600) -> str:
    now = int(time.time())
    payload = {"id": user_id, "iat": now, "exp": now + ttl}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: Optional[str]) -> str:
    """Return the user id carried by `token` or raise AuthError."""
    if not token:
        raise AuthError("authentication token required")
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("token has expired")
    except jwt.InvalidTokenError as e:
        log.warning("invalid token: %s", e)
        raise AuthError("invalid authentication token")
    user_id = payload.get("id") or payload.get("sub")
    if not user_id:
        raise AuthError("invalid token payload")
    return str(user_id)


def bearer_from_header(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
