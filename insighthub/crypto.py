"""
Encryption at rest for platform OAuth tokens.

Connection rows never hold a readable access or refresh token: both pass
through a Fernet cipher keyed by ENCRYPTION_KEY. Several comma-separated keys
may be configured to rotate keys. The first one encrypts, all of them are
tried on decrypt (MultiFernet).

Without a key in development, tokens are stored as-is so a local database
works out of the box. Production refuses to start without a key.
"""

import logging
from cryptography.fernet import Fernet, MultiFernet, InvalidToken
from insighthub.config import get_settings

logger = logging.getLogger(__name__)

_cipher: MultiFernet | None = None
_plaintext_warned = False


def _load_cipher() -> MultiFernet | None:
    global _cipher, _plaintext_warned
    if _cipher is not None:
        return _cipher

    settings = get_settings()
    keys = [k.strip() for k in settings.encryption_key.split(",") if k.strip()]

    if not keys:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        if not _plaintext_warned:
            logger.warning(
                "ENCRYPTION_KEY not set — platform tokens are stored unencrypted. "
                "Only acceptable for local development."
            )
            _plaintext_warned = True
        return None

    try:
        _cipher = MultiFernet([Fernet(k.encode()) for k in keys])
    except ValueError as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc
    return _cipher


def reset_cipher() -> None:
    """Forget the cached cipher (after the key setting changes)."""
    global _cipher
    _cipher = None


def encrypt_token(token: str | None) -> str | None:
    if token is None:
        return None
    cipher = _load_cipher()
    if cipher is None:
        return token
    return cipher.encrypt(token.encode()).decode()


def decrypt_token(stored: str | None) -> str | None:
    """Return the usable token for a stored value, or None when nothing is stored."""
    if stored is None:
        return None
    cipher = _load_cipher()
    if cipher is None:
        return stored
    try:
        return cipher.decrypt(stored.encode()).decode()
    except InvalidToken:
        # Rows written before a key was configured
        logger.warning("Stored token is not valid ciphertext — treating it as legacy plaintext.")
        return stored
