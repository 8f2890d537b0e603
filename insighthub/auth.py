"""
Authentication — JWT bearer tokens issued by /api/auth/login and /api/auth/register.

Include on every user-scoped request: Authorization: Bearer <jwt>
"""

import logging
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from insighthub.database import get_db
from insighthub.models import User
from insighthub.services.auth_service import decode_access_token
from insighthub.utils import try_parse_uuid

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Require a valid JWT and return the active User it belongs to."""
    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <token>",
        )

    payload = decode_access_token(credentials.credentials)
    user_id = try_parse_uuid(payload.get("sub")) if payload else None
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token. Please log in again.")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account is disabled")

    return user
