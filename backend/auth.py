"""JWT helpers.

Tokens are issued by the login service. The billing API decodes them to
get the caller's claims: user_id (required), email, name and role.
"""
from jose import JWTError, ExpiredSignatureError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
import logging
import os
from models import UserRole

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))


def create_access_token(
    user_id: str,
    email: Optional[str] = None,
    role: str = UserRole.USER.value,
    name: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Sign a token with billing claims (scripts and tests; production tokens come from login)."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=JWT_EXPIRATION_HOURS))
    claims = {"user_id": user_id, "email": email, "name": name, "role": role, "exp": expire}
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict]:
    """Claims of a valid token, None for expired, forged or user-less tokens."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        logger.info("Rejected expired access token")
        return None
    except JWTError:
        return None
    if not payload.get("user_id"):
        return None
    payload.setdefault("role", UserRole.USER.value)
    return payload


def is_admin(claims: Dict) -> bool:
    return claims.get("role") == UserRole.ADMIN.value
