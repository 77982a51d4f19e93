from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

from cryptography.fernet import Fernet, InvalidToken

from autohealer.logging import get_logger
from autohealer.service.errors import ServerError

logger = get_logger(__name__)


class SecretStore:
    """Reversible encryption for MFA material plus one-way token hashing.

    TOTP secrets and backup codes must be read back to verify a code, so they
    are sealed with Fernet under a key derived from configuration. Reset and
    verification tokens are only ever compared, so they are stored as SHA-256
    digests.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("encryption key material is required")
        self._cipher = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("secret_decrypt_failed")
            raise ServerError("stored secret could not be decrypted")

    @staticmethod
    def hash_token(raw: str) -> str:
        return hashlib.sha256(raw.encode()).hexdigest()

    @staticmethod
    def constant_time_equals(left: str, right: str) -> bool:
        return hmac.compare_digest(left.encode(), right.encode())

    @staticmethod
    def random_hex(num_bytes: int = 32) -> str:
        return secrets.token_hex(num_bytes)
