"""Tests for token encryption."""

import pytest

from calendar_sync.auth.encryption import TokenCipher
from calendar_sync.exceptions import TokenEncryptionError


class TestTokenCipher:
    def test_encrypts_to_different_text(self):
        cipher = TokenCipher(TokenCipher.generate_key())
        encrypted = cipher.encrypt("ya29.secret")
        assert encrypted != "ya29.secret"
        assert cipher.decrypt(encrypted) == "ya29.secret"

    def test_none_passes_through(self):
        cipher = TokenCipher(TokenCipher.generate_key())
        assert cipher.encrypt(None) is None
        assert cipher.decrypt(None) is None

    def test_wrong_key_raises(self):
        encrypted = TokenCipher(TokenCipher.generate_key()).encrypt("token")
        other = TokenCipher(TokenCipher.generate_key())

        with pytest.raises(TokenEncryptionError):
            other.decrypt(encrypted)

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            TokenCipher("")
