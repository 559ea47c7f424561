"""
Symmetric encryption for stored OAuth credentials.

Tokens are encrypted with Fernet (AES-128-CBC + HMAC) before they reach
the database and decrypted only when a request needs them.
"""

import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from calendar_sync.config import get_settings
from calendar_sync.exceptions import TokenEncryptionError

logger = logging.getLogger(__name__)


class TokenCipher:
    """Encrypts and decrypts token strings with a single Fernet key."""

    def __init__(self, key: str | bytes):
        if not key:
            raise ValueError("Token encryption key is empty")
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored token.

        Raises:
            TokenEncryptionError: If the ciphertext was not produced with this key
        """
        if value is None:
            return None
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise TokenEncryptionError("Stored token could not be decrypted", original_error=e)


@lru_cache()
def get_token_cipher() -> TokenCipher:
    """
    Cipher built from TOKEN_ENCRYPTION_KEY.

    Development setups without a key get an ephemeral one; tokens stored
    with it do not survive a restart.
    """
    settings = get_settings()
    key = settings.token_encryption_key
    if not key:
        if settings.is_production:
            raise ValueError("TOKEN_ENCRYPTION_KEY is required in production.")
        logger.warning("TOKEN_ENCRYPTION_KEY not set; using an ephemeral key")
        key = TokenCipher.generate_key()
    return TokenCipher(key)
