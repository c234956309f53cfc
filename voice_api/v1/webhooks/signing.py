"""
Webhook secret generation, storage encryption and payload signing.
"""

import base64
import hashlib
import hmac
import secrets
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SIGNATURE_PREFIX = "sha256="
_KDF_SALT = b"voice_api_webhook_secret_salt"


def generate_secret() -> str:
    """Generate a new signing secret (64 hex characters)."""
    return secrets.token_hex(32)


def compute_signature(secret: str, body: str | bytes) -> str:
    """
    HMAC-SHA256 of the raw request body, formatted for ``X-Webhook-Signature``.
    """
    if isinstance(body, str):
        body = body.encode()
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: str | bytes, signature: str) -> bool:
    """Constant-time check of a received signature header."""
    return hmac.compare_digest(compute_signature(secret, body), signature)


class SecretDecryptionError(Exception):
    """Stored secret cannot be decrypted with the configured key."""


class SecretBox:
    """Encrypts signing secrets at rest with Fernet."""

    def __init__(self, encryption_key: str):
        self._fernet = Fernet(self._derive_key(encryption_key))

    @staticmethod
    def _derive_key(key: str) -> bytes:
        # Accept a ready-made Fernet key, otherwise stretch the passphrase
        try:
            Fernet(key.encode())
            return key.encode()
        except ValueError:
            pass

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KDF_SALT,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(key.encode()))

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, encrypted_secret: str) -> str:
        try:
            return self._fernet.decrypt(encrypted_secret.encode()).decode()
        except InvalidToken as exc:
            raise SecretDecryptionError("Webhook secret could not be decrypted") from exc


@lru_cache(maxsize=4)
def get_secret_box(encryption_key: str) -> SecretBox:
    """Shared ``SecretBox`` per key, since key stretching is deliberately slow."""
    return SecretBox(encryption_key)
