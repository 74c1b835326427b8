"""FastAPI authentication dependencies."""

from __future__ import annotations

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.auth.jwt import verify_token
from pawpals.database import get_session
from pawpals.db.models import User

_bearer = HTTPBearer()


async def get_user_from_token(db: AsyncSession, token: str) -> User:
    """Verify a bearer token and load its user. Raises 401/403 on failure."""
    try:
        payload = verify_token(token, expected_type="access")
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e

    user = await db.get(User, int(payload["sub"]))
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> User:
    """Extract and verify the JWT, return the User model."""
    return await get_user_from_token(db, credentials.credentials)


async def get_admin_user(user: User = Depends(get_current_user)) -> User:
    """Same as get_current_user but requires the admin flag."""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return user
