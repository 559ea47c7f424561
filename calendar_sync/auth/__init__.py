"""
Authentication module for the calendar sync engine.

Provides the OAuth 2.0 flow, encrypted credential storage and the
central token refresh path.
"""

from calendar_sync.auth.encryption import TokenCipher, get_token_cipher
from calendar_sync.auth.google_oauth import (
    GoogleOAuthFlow,
    GoogleUserInfo,
    OAuthTokens,
    get_oauth_flow,
)
from calendar_sync.auth.token_manager import TokenManager, store_tokens

__all__ = [
    "TokenCipher",
    "get_token_cipher",
    "GoogleOAuthFlow",
    "GoogleUserInfo",
    "OAuthTokens",
    "get_oauth_flow",
    "TokenManager",
    "store_tokens",
]
