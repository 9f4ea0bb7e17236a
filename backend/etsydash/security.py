"""Security utilities for session JWTs and Etsy token encryption.

WHAT:
    Symmetric encryption for the OAuth access/refresh tokens stored on each
    Store row, plus JWT decoding to identify the calling seller.

WHY:
    - Etsy tokens grant write access to a seller's shop; they never land in
      the database or logs in plaintext.
    - Routers resolve the owner of a request from a signed session cookie.

REFERENCES:
    - etsydash/services/token_service.py (encrypts on connect and refresh)
    - etsydash/deps.py::get_current_user_id
"""

import base64
import logging
import os
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken
from jose import jwt, JWTError


ALGORITHM = "HS256"
JWT_SECRET = os.getenv("JWT_SECRET", "")
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

logger = logging.getLogger(__name__)


if not JWT_SECRET or not TOKEN_ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from etsydash.utils.env import load_env_file
    load_env_file()
    JWT_SECRET = JWT_SECRET or os.getenv("JWT_SECRET", "")
    TOKEN_ENCRYPTION_KEY = TOKEN_ENCRYPTION_KEY or os.getenv("TOKEN_ENCRYPTION_KEY", "")

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set. Ensure backend/.env is created or env var is exported.")

if not TOKEN_ENCRYPTION_KEY:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY is not set. Generate a Fernet key with "
        "`cryptography.fernet.Fernet.generate_key()` and export it or add it to backend/.env."
    )

try:
    base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string."
    ) from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt an OAuth token before persisting it on a Store.

    Args:
        plaintext: Raw secret to encrypt (Etsy access or refresh token).
        context:   Label for logs, e.g. "store:<id>:access".

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Reverse `encrypt_secret` when a token is needed for an API call.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        logger.warning("[AUTH] Rejected session token")
        raise
