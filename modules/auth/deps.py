"""
Auth Module - Dependencies
===========================
FastAPI dependencies for user authentication and authorization.
These are injected into route handlers via Depends().

The session token is a JWT in the `session` cookie carrying sub (user id),
role and csrf. Issuing it is outside this app; see scripts/seed.py.
"""

from fastapi import Request, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from common.exceptions import AuthenticationError, AuthorizationError
from common.helpers import safe_int
from common.security import decode_token, SESSION_COOKIE
from modules.user.models import User


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Identify the current user from the session cookie.
    Returns User object or None.
    """
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None

    payload = decode_token(token)
    if not payload:
        return None

    user_id = safe_int(payload.get("sub"))
    if not user_id:
        return None

    user = await db.get(User, user_id)
    if not user or not user.is_active:
        return None
    return user


def require_login(user=Depends(get_current_user)):
    """Require any authenticated active user. Raises 401 if not logged in."""
    if not user:
        raise AuthenticationError()
    return user


def require_admin(user=Depends(get_current_user)):
    """Only allow admin users."""
    if not user:
        raise AuthenticationError()
    if not user.is_admin:
        raise AuthorizationError()
    return user
