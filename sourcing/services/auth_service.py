from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

from jose import jwt, JWTError
import structlog

from sourcing.config import settings

logger = structlog.get_logger()

ROLES = ("admin", "buyer", "supplier")


# ---------- token generation ----------

def create_access_token(
    user_id: str,
    role: str,
    email: str,
    expires_minutes: Optional[int] = None,
) -> str:
    """Issue a token in the shape the identity provider uses; handy for tests and scripts."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        "jti": str(uuid.uuid4()),
        "type": "access",
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# ---------- token verification ----------

def verify_access_token(token: str) -> dict:
    """Decode and verify an access token. Raises JWTError on failure."""
    payload = jwt.decode(
        token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
    )
    if payload.get("type") != "access":
        raise JWTError("Not an access token")
    if payload.get("role") not in ROLES:
        raise JWTError(f"Unknown role '{payload.get('role')}'")
    return payload
