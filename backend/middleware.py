"""Request guards for billing routes (FastAPI dependencies)."""
from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, is_admin

logger = logging.getLogger(__name__)


async def get_current_user(request: Request) -> Optional[dict]:
    """Claims from the bearer token, or None."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return decode_access_token(auth_header.split(" ", 1)[1])


async def require_auth(request: Request) -> dict:
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user


async def require_admin(request: Request) -> dict:
    user = await require_auth(request)
    if not is_admin(user):
        logger.warning("Admin route denied for user %s on %s", user.get("user_id"), request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user


def ensure_owner(user: dict, owner_id: Optional[str]):
    """Users may only act on their own billing records; admins may act on any."""
    if is_admin(user):
        return
    if owner_id != user.get("user_id"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to access this resource"
        )
