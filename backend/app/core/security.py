from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from .config import settings


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    payload = {
        "sub": str(user_id),
        "type": "access",
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode a signed credential token.

    Raises:
        jwt.ExpiredSignatureError: token has expired
        jwt.InvalidTokenError: token is malformed, badly signed or of the wrong type
    """
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])

    if payload.get("type") and payload.get("type") != "access":
        raise jwt.InvalidTokenError("Invalid token type")
    if not payload.get("sub"):
        raise jwt.InvalidTokenError("Token has no subject")

    return payload
