"""
OAuth Service - Server-side Google authorization code exchange

The client secret never leaves this service; browsers only ever hold the
short-lived authorization code.
"""
from typing import Dict, Optional

import httpx

from ..core.config import Settings, get_settings
from ..core.exceptions import AuthenticationError, ConfigurationError
from ..core.logging import get_logger

logger = get_logger(__name__)


class GoogleOAuthService:
    """Service for Google OAuth operations"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.token_url = self.settings.GOOGLE_TOKEN_URL
        self.timeout = self.settings.HTTP_TIMEOUT
        self._client = http_client

    def _credentials(self):
        client_id = self.settings.GOOGLE_CLIENT_ID
        client_secret = self.settings.GOOGLE_CLIENT_SECRET
        if not client_id or not client_secret:
            raise ConfigurationError("Google OAuth credentials not configured")
        return client_id, client_secret

    async def exchange_code_for_token(self, code: str, redirect_uri: Optional[str] = None) -> Dict:
        """
        Exchange authorization code for access and refresh tokens

        Args:
            code: Authorization code from Google
            redirect_uri: Redirect URI used in authorization

        Returns:
            Token response from Google

        Raises:
            ConfigurationError: If client credentials are missing
            AuthenticationError: If token exchange fails
        """
        if not code:
            raise AuthenticationError("Authorization code is required")

        client_id, client_secret = self._credentials()
        payload = {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri or self.settings.GOOGLE_REDIRECT_URI,
            "grant_type": "authorization_code",
        }

        logger.info("Exchanging authorization code for tokens", client_id=client_id[:20])

        if self._client is not None:
            response = await self._client.post(self.token_url, data=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.token_url, data=payload)

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            detail = error_data.get("error_description") or error_data.get("error") or response.reason_phrase
            logger.error("Failed to exchange code for token", status_code=response.status_code, error=detail)
            raise AuthenticationError(f"Failed to exchange code for token: {detail}")

        token_data = response.json()
        if not token_data.get("access_token"):
            raise AuthenticationError("Token exchange failed: no access token returned")

        logger.info("Successfully exchanged code for tokens")
        return token_data
