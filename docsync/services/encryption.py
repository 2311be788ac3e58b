"""
docsync - Credential Cipher
===========================

Authenticated symmetric encryption for credential blobs stored on
sources.

Uses Fernet (AES-128-CBC + HMAC-SHA256). The process-wide ENCRYPTION_KEY
is exactly 32 characters; its bytes are the Fernet key material, so a
wrong-length key is a startup error rather than something to derive
around. Any blob that fails authentication raises IntegrityError.
"""

import base64
import binascii
import json
import secrets
from typing import Any, Dict, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
import structlog

from docsync.core.config import ENCRYPTION_KEY_LENGTH, settings
from docsync.services.base import ConfigurationException, IntegrityError

logger = structlog.get_logger(__name__)

Plaintext = Union[str, Dict[str, Any]]

# Payload type tags, so str and dict inputs both round-trip exactly
_TEXT_TAG = "s:"
_JSON_TAG = "j:"


class CredentialCipher:
    """
    Encrypt and decrypt credential payloads.

    Usage:
        cipher = CredentialCipher(settings.ENCRYPTION_KEY)
        blob = cipher.encrypt({"refresh_token": "..."})
        creds = cipher.decrypt(blob)
    """

    def __init__(self, key: str):
        if not isinstance(key, str) or len(key) != ENCRYPTION_KEY_LENGTH:
            raise ConfigurationException(
                f"Encryption key must be exactly {ENCRYPTION_KEY_LENGTH} characters long"
            )
        key_bytes = key.encode("utf-8")
        if len(key_bytes) != ENCRYPTION_KEY_LENGTH:
            raise ConfigurationException("Encryption key must be ASCII")
        self._fernet = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, plaintext: Plaintext) -> str:
        """
        Encrypt a string or a JSON-serialisable dict.

        Returns:
            URL-safe base64 token
        """
        if isinstance(plaintext, dict):
            payload = _JSON_TAG + json.dumps(plaintext, separators=(",", ":"), sort_keys=True)
        elif isinstance(plaintext, str):
            payload = _TEXT_TAG + plaintext
        else:
            raise TypeError(f"Cannot encrypt {type(plaintext).__name__}; expected str or dict")
        return self._fernet.encrypt(payload.encode("utf-8")).decode("ascii")

    def decrypt(self, blob: str) -> Plaintext:
        """
        Decrypt a token produced by encrypt().

        Raises:
            IntegrityError: tampered, truncated, foreign-key or malformed blob
        """
        if not isinstance(blob, str) or not blob:
            raise IntegrityError("Credential blob is empty or not a string")

        try:
            payload = self._fernet.decrypt(blob.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, binascii.Error, ValueError) as e:
            logger.error("Decryption failed - invalid token or key mismatch")
            raise IntegrityError() from e

        if payload.startswith(_JSON_TAG):
            try:
                return json.loads(payload[len(_JSON_TAG):])
            except json.JSONDecodeError as e:
                raise IntegrityError("Credential payload is not valid JSON") from e
        if payload.startswith(_TEXT_TAG):
            return payload[len(_TEXT_TAG):]
        raise IntegrityError("Credential payload has an unknown format")


# Process-wide cipher built from settings
_cipher: Optional[CredentialCipher] = None


def get_cipher() -> CredentialCipher:
    """Get or create the process-wide cipher."""
    global _cipher
    if _cipher is None:
        _cipher = CredentialCipher(settings.ENCRYPTION_KEY)
    return _cipher


def encrypt_credentials(credentials: Dict[str, Any], cipher: Optional[CredentialCipher] = None) -> str:
    return (cipher or get_cipher()).encrypt(dict(credentials or {}))


def decrypt_credentials(blob: str, cipher: Optional[CredentialCipher] = None) -> Dict[str, Any]:
    """
    Raises:
        IntegrityError: tampered blob, another key, or a payload that is not a mapping
    """
    value = (cipher or get_cipher()).decrypt(blob)
    if not isinstance(value, dict):
        raise IntegrityError("Credential blob does not hold a credential mapping")
    return value


def mask_secret(secret: str, visible_chars: int = 4) -> str:
    """
    Mask a secret for safe display.

    Returns:
        Masked string like "abcd...wxyz"
    """
    if not secret:
        return ""

    if len(secret) <= visible_chars * 2:
        return "*" * len(secret)

    return f"{secret[:visible_chars]}...{secret[-visible_chars:]}"


def mask_credentials(credentials: Dict[str, Any]) -> Dict[str, Any]:
    """Mask every string value of a credential mapping."""
    return {
        key: mask_secret(value) if isinstance(value, str) else value
        for key, value in credentials.items()
    }


def generate_encryption_key() -> str:
    """
    Generate a new random key of the required length.

    Returns:
        32 URL-safe characters (24 random bytes)
    """
    return secrets.token_urlsafe(24)
