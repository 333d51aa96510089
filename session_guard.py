"""Session Validity Guard.

Reads the ``iat`` claim out of the bearer token to decide whether the session
still *looks* fresh. The signature is never verified here (the frontend holds no
key), so the result is advisory: it only spares the user a stale-looking app.
It must never be used to grant access. The backend validates the token on every
API call and remains the only authorization boundary.
"""
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

import jwt

from session_store import SessionStore

logger = logging.getLogger(__name__)

SESSION_LIFETIME = timedelta(hours=12)


class CredentialExpired(Exception):
    """The token is past its lifetime or cannot be decoded."""


class SessionCheck(str, Enum):
    ANONYMOUS = "anonymous"
    VALID = "valid"
    EXPIRED = "expired"


def read_issued_at(token: str) -> datetime:
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise CredentialExpired(f"Undecodable token: {e}") from e

    iat = payload.get("iat")
    # bool is an int subclass but never a timestamp
    if isinstance(iat, bool) or not isinstance(iat, (int, float)):
        raise CredentialExpired("Token has no numeric iat claim")
    try:
        return datetime.fromtimestamp(iat, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise CredentialExpired(f"Token iat out of range: {iat}") from e


def check_session(token: Optional[str], now: Optional[datetime] = None) -> SessionCheck:
    if not token:
        return SessionCheck.ANONYMOUS
    now = now or datetime.now(timezone.utc)
    try:
        issued_at = read_issued_at(token)
    except CredentialExpired as e:
        logger.info("Treating session as expired: %s", e)
        return SessionCheck.EXPIRED
    if now - issued_at >= SESSION_LIFETIME:
        return SessionCheck.EXPIRED
    return SessionCheck.VALID


def guard(store: SessionStore, now: Optional[datetime] = None) -> SessionCheck:
    """Check the store's token and purge durable storage when it has expired."""
    result = check_session(store.token, now)
    if result is SessionCheck.EXPIRED:
        store.purge()
    return result
