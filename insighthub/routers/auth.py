"""
Auth Router — Login, register, whoami.
"""

import logging
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from insighthub.auth import get_current_user
from insighthub.config import get_settings
from insighthub.database import get_db
from insighthub.models import User
from insighthub.services.auth_service import (
    hash_password,
    verify_password,
    create_access_token,
)
from insighthub.utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])

MIN_PASSWORD_LENGTH = 8


# ── Schemas ────────────────────────────────────────────────────────────

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    name: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class WhoAmIResponse(BaseModel):
    id: str
    email: str
    name: str | None
    role: str
    is_active: bool


def _token_response(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(str(user.id), user.email, user.role),
        user={
            "id": str(user.id),
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "is_active": user.is_active,
        },
    )


# ── Endpoints ───────────────────────────────────────────────────────────

@router.post("/login", response_model=TokenResponse)
async def login(payload: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Login with email and password. Returns JWT."""
    result = await db.execute(select(User).where(User.email == payload.email.lower()))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account is disabled")
    if not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    user.last_login_at = utcnow()
    await db.flush()
    return _token_response(user)


@router.post("/register", response_model=TokenResponse)
async def register(payload: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Create an account and return a JWT. The first account becomes admin.
    In production only the first account can self-register; later ones are created by an admin."""
    settings = get_settings()
    if len(payload.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    count_result = await db.execute(select(func.count()).select_from(User))
    is_first = (count_result.scalar() or 0) == 0
    if settings.is_production and not is_first:
        raise HTTPException(status_code=403, detail="Registration is closed. Ask an admin for an account.")

    existing = await db.execute(select(User).where(User.email == payload.email.lower()))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        email=payload.email.lower(),
        password_hash=hash_password(payload.password),
        name=payload.name or payload.email.split("@")[0],
        role="admin" if is_first else "user",
        is_active=True,
    )
    db.add(user)
    await db.flush()
    logger.info(f"Registered user {user.email} ({user.role})")
    return _token_response(user)


@router.get("/whoami", response_model=WhoAmIResponse)
async def whoami(user: User = Depends(get_current_user)):
    """Return current user. Requires JWT auth."""
    return WhoAmIResponse(
        id=str(user.id),
        email=user.email,
        name=user.name,
        role=user.role,
        is_active=user.is_active,
    )
