"""
Encryption for PMS OAuth tokens at rest.

Fernet (AES-128-CBC + HMAC) keyed from TOKEN_ENCRYPTION_KEY. Any string is
accepted as key material; it is hashed to the 32 bytes Fernet expects.
"""

import base64
import hashlib
import os

from cryptography.fernet import Fernet, InvalidToken

TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "dev-token-key-change-me")


class TokenDecryptionError(Exception):
    """Stored token cannot be decrypted with the configured key."""


def _fernet() -> Fernet:
    key = base64.urlsafe_b64encode(hashlib.sha256(TOKEN_ENCRYPTION_KEY.encode()).digest())
    return Fernet(key)


def encrypt_token(plaintext: str | None) -> str:
    if not plaintext:
        return ""
    return _fernet().encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: str | None) -> str:
    if not ciphertext:
        return ""
    try:
        return _fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken as e:
        raise TokenDecryptionError("Stored token could not be decrypted (key rotated?)") from e
