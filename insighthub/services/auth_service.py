"""
Auth Service — Password hashing and JWTs (user sessions + OAuth round-trip state).
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from insighthub.config import get_settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)

# JWT config
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours
OAUTH_STATE_EXPIRE_MINUTES = 10
OAUTH_STATE_AUDIENCE = "oauth-state"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(user_id: str, email: str, role: str) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    # State tokens share the secret; never accept one as a session
    if payload.get("aud") == OAUTH_STATE_AUDIENCE:
        return None
    return payload


def create_state_token(client_id: str, platform: str, user_id: str, return_path: str) -> str:
    """Signed, short-lived state carried through the platform's OAuth redirect."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "aud": OAUTH_STATE_AUDIENCE,
        "client_id": str(client_id),
        "platform": platform,
        "user_id": str(user_id),
        "return_path": return_path,
        "iat": now,
        "exp": now + timedelta(minutes=OAUTH_STATE_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_state_token(state: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(
            state,
            settings.secret_key,
            algorithms=[ALGORITHM],
            audience=OAUTH_STATE_AUDIENCE,
        )
    except JWTError as e:
        logger.warning(f"Rejected OAuth state: {e}")
        return None
