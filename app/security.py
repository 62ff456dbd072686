"""Token signing and credential encryption used by the stub backend."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import Settings
from .models import TokenPair, User

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_ISSUER = "anime-recommendation-engine"
JWT_AUDIENCE = "anime-recommendation-client"
NONCE_BYTES = 12


class ConfigurationError(RuntimeError):
    """Raised when a required secret is not configured."""


class EncryptionError(RuntimeError):
    pass


def _jwt_secret(settings: Settings) -> str:
    if not settings.jwt_secret:
        raise ConfigurationError("JWT_SECRET environment variable is not set")
    return settings.jwt_secret


def _jwt_refresh_secret(settings: Settings) -> str:
    if not settings.jwt_refresh_secret:
        raise ConfigurationError("JWT_REFRESH_SECRET environment variable is not set")
    return settings.jwt_refresh_secret


def _claims(user: User, ttl_seconds: int) -> dict[str, Any]:
    if not user.id:
        raise ValueError("User ID is required to generate token")
    now = datetime.now(timezone.utc)
    return {
        "userId": user.id,
        "email": user.email,
        "username": user.username,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
        "jti": secrets.token_hex(8),
    }


def generate_access_token(settings: Settings, user: User) -> str:
    """Short-lived bearer token."""

    return jwt.encode(
        _claims(user, settings.access_token_ttl_seconds),
        _jwt_secret(settings),
        algorithm=JWT_ALGORITHM,
    )


def generate_refresh_token(settings: Settings, user: User) -> str:
    """Long-lived token used only to mint new access tokens."""

    return jwt.encode(
        _claims(user, settings.refresh_token_ttl_seconds),
        _jwt_refresh_secret(settings),
        algorithm=JWT_ALGORITHM,
    )


def generate_token_pair(settings: Settings, user: User) -> TokenPair:
    return TokenPair(
        access_token=generate_access_token(settings, user),
        refresh_token=generate_refresh_token(settings, user),
    )


def _verify(token: str, secret: str) -> dict[str, Any] | None:
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE,
            issuer=JWT_ISSUER,
        )
    except jwt.PyJWTError:
        return None


def verify_access_token(settings: Settings, token: str) -> dict[str, Any] | None:
    """Return the token claims, or ``None`` for invalid or expired tokens."""

    return _verify(token, _jwt_secret(settings))


def verify_refresh_token(settings: Settings, token: str) -> dict[str, Any] | None:
    return _verify(token, _jwt_refresh_secret(settings))


def extract_token_from_header(header: str | None) -> str | None:
    if not header or not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    return token or None


def _encryption_key(settings: Settings) -> bytes:
    key = settings.encryption_key
    if not key:
        raise ConfigurationError("ENCRYPTION_KEY environment variable is not set")
    if len(key) < 32:
        raise ConfigurationError("ENCRYPTION_KEY must be at least 32 characters long")
    return key.encode("utf-8")[:32]


def encrypt_api_key(settings: Settings, api_key: str) -> str:
    """Encrypt a credential with AES-256-GCM.

    The result is base64 of ``nonce || ciphertext``. Every call uses a
    fresh random nonce, so encrypting the same key twice gives different
    output.
    """

    aes = AESGCM(_encryption_key(settings))
    nonce = secrets.token_bytes(NONCE_BYTES)
    ciphertext = aes.encrypt(nonce, api_key.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_api_key(settings: Settings, encrypted: str) -> str:
    aes = AESGCM(_encryption_key(settings))
    try:
        blob = base64.b64decode(encrypted.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise EncryptionError("Failed to decrypt API key") from exc
    if len(blob) <= NONCE_BYTES:
        raise EncryptionError("Failed to decrypt API key")
    try:
        plaintext = aes.decrypt(blob[:NONCE_BYTES], blob[NONCE_BYTES:], None)
    except InvalidTag as exc:
        logger.warning("Rejected tampered or foreign API key ciphertext")
        raise EncryptionError("Failed to decrypt API key") from exc
    return plaintext.decode("utf-8")


def hash_api_key(api_key: str) -> str:
    """One-way SHA-256 digest for comparing credentials without storing them."""

    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def hash_password(password: str, iterations: int = 100_000) -> str:
    """Hash a password using PBKDF2-SHA256."""
    if not password:
        raise ValueError("Password is required")
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return (
        f"pbkdf2_sha256${iterations}$"
        f"{binascii.hexlify(salt).decode('ascii')}$"
        f"{binascii.hexlify(digest).decode('ascii')}"
    )


def verify_password(password: str, stored_hash: str) -> bool:
    if not password or not stored_hash:
        return False
    try:
        scheme, iterations_raw, salt_hex, digest_hex = stored_hash.split("$", 3)
        iterations = int(iterations_raw)
        salt = binascii.unhexlify(salt_hex.encode("ascii"))
        expected = binascii.unhexlify(digest_hex.encode("ascii"))
    except (ValueError, binascii.Error):
        return False
    if scheme != "pbkdf2_sha256":
        return False

    actual = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(actual, expected)
