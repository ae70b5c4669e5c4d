"""
Bearer tokens for the payouts API.

The platform's auth service signs tokens with the shared SECRET_KEY; this
service only reads the subject (the caller's email). create_access_token
exists for service-to-service calls and tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config import settings

DEFAULT_TOKEN_LIFETIME = timedelta(minutes=15)


def create_access_token(claims: dict, expires_delta: Optional[timedelta] = None) -> str:
    payload = {**claims, "exp": datetime.now(timezone.utc) + (expires_delta or DEFAULT_TOKEN_LIFETIME)}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[str]:
    """Email of the caller, or None for a bad, expired or subject-less token"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub") or None
