"""
Authentication dependencies for FastAPI routes.

Authentication itself happens at the gateway, which forwards the caller's
identity as X-User-Id and X-User-Role headers.
"""

from typing import Optional
from fastapi import Depends, Header, HTTPException, status

ROLE_COACH = "coach"
ROLE_PLAYER = "player"
VALID_ROLES = {ROLE_COACH, ROLE_PLAYER}


async def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> dict:
    """
    Dependency to get the calling user from the gateway identity headers.

    Returns:
        User dictionary with "id" and "role"

    Raises:
        HTTPException: 401 if the identity headers are missing or malformed
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity header (X-User-Id)",
        )

    role = (x_user_role or ROLE_PLAYER).strip().lower()
    if role not in VALID_ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unknown user role: {role}",
        )

    return {"id": user_id, "role": role}


async def require_user(user: dict = Depends(get_current_user)) -> dict:
    """Require any identified user."""
    return user


async def require_coach(user: dict = Depends(get_current_user)) -> dict:
    """Require a coach. Raises 403 for players."""
    if user.get("role") != ROLE_COACH:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Coach access required",
        )
    return user
