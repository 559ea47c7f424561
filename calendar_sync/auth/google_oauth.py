"""
Google OAuth 2.0 implementation for calendar access.

Implements the OAuth 2.0 authorization code flow:
1. Generate authorization URL → user redirected to Google
2. User grants permission → Google redirects back with code
3. Exchange code for tokens → access_token + refresh_token
4. Refresh access_token when expired using refresh_token
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional
from urllib.parse import urlencode

import httpx

from calendar_sync.config import Settings, get_settings
from calendar_sync.integrations.google_calendar.exceptions import (
    GoogleCalendarAuthError,
    GoogleCalendarError,
    GoogleCalendarNetworkError,
    GoogleCalendarServiceUnavailableError,
)

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]


@dataclass
class OAuthTokens:
    """OAuth token response from Google."""

    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    token_type: str
    scope: str

    @property
    def expiry(self) -> datetime:
        """Calculate token expiry time."""
        return datetime.now(timezone.utc) + timedelta(seconds=self.expires_in)


@dataclass
class GoogleUserInfo:
    """User info from Google OAuth."""

    email: str
    name: Optional[str] = None


def _raise_for_token_error(response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    error_code = payload.get("error") if isinstance(payload, dict) else None

    if error_code in ("invalid_grant", "invalid_client", "unauthorized_client") or response.status_code == 401:
        raise GoogleCalendarAuthError(
            f"Token endpoint rejected the grant ({error_code or response.status_code})",
            status_code=response.status_code,
            details=payload if isinstance(payload, dict) else {},
        )
    if response.status_code >= 500:
        raise GoogleCalendarServiceUnavailableError(
            f"Token endpoint unavailable ({response.status_code})",
            status_code=response.status_code,
        )
    raise GoogleCalendarError(
        f"Token request failed ({response.status_code})",
        status_code=response.status_code,
        details=payload if isinstance(payload, dict) else {},
    )


class GoogleOAuthFlow:
    """
    Manages the Google OAuth 2.0 flow.

    Usage:
        flow = GoogleOAuthFlow()
        auth_url = flow.get_authorization_url(state="random_state")
        tokens = await flow.exchange_code(code)
        user_info = await flow.get_user_info(tokens.access_token)
        new_tokens = await flow.refresh_token(tokens.refresh_token)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_settings()
        self.client_id = settings.google_oauth_client_id
        self.client_secret = settings.google_oauth_client_secret
        self.redirect_uri = settings.google_oauth_redirect_uri
        self._timeout = settings.request_timeout_seconds
        self._http_client = http_client

        if not self.client_id or not self.client_secret:
            logger.warning(
                "Google OAuth not configured. Set GOOGLE_OAUTH_CLIENT_ID and "
                "GOOGLE_OAUTH_CLIENT_SECRET in environment."
            )

    def get_authorization_url(self, state: str) -> str:
        """
        Generate the Google OAuth authorization URL.

        Args:
            state: Random string to prevent CSRF attacks

        Returns:
            URL to redirect user to for authorization
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(CALENDAR_SCOPES),
            "access_type": "offline",  # Get refresh token
            "prompt": "consent",  # Always show consent screen (ensures refresh token)
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _post(self, url: str, data: dict) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.post(url, data=data)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.post(url, data=data)
        except httpx.TransportError as e:
            raise GoogleCalendarNetworkError(f"Token endpoint unreachable: {e}", original_error=e)

    async def exchange_code(self, code: str) -> OAuthTokens:
        """
        Exchange authorization code for access and refresh tokens.

        Raises:
            GoogleCalendarAuthError: If Google rejects the code
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }

        response = await self._post(GOOGLE_TOKEN_URL, data)
        _raise_for_token_error(response)
        token_data = response.json()

        logger.info("Successfully exchanged authorization code for tokens")

        return OAuthTokens(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_in=token_data.get("expires_in", 3600),
            token_type=token_data.get("token_type", "Bearer"),
            scope=token_data.get("scope", ""),
        )

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """
        Refresh an expired access token.

        Raises:
            GoogleCalendarAuthError: If the refresh token was revoked (invalid_grant)
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        response = await self._post(GOOGLE_TOKEN_URL, data)
        _raise_for_token_error(response)
        token_data = response.json()

        logger.info("Successfully refreshed access token")

        return OAuthTokens(
            access_token=token_data["access_token"],
            # Google only rotates the refresh token occasionally
            refresh_token=token_data.get("refresh_token", refresh_token),
            expires_in=token_data.get("expires_in", 3600),
            token_type=token_data.get("token_type", "Bearer"),
            scope=token_data.get("scope", ""),
        )

    async def get_user_info(self, access_token: str) -> GoogleUserInfo:
        """Get the authorizing account's email from Google."""
        headers = {"Authorization": f"Bearer {access_token}"}

        try:
            if self._http_client is not None:
                response = await self._http_client.get(GOOGLE_USERINFO_URL, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(GOOGLE_USERINFO_URL, headers=headers)
        except httpx.TransportError as e:
            raise GoogleCalendarNetworkError(f"Userinfo endpoint unreachable: {e}", original_error=e)

        _raise_for_token_error(response)
        user_data = response.json()

        return GoogleUserInfo(email=user_data["email"], name=user_data.get("name"))


@lru_cache()
def get_oauth_flow() -> GoogleOAuthFlow:
    """Get the shared OAuth flow."""
    return GoogleOAuthFlow()
