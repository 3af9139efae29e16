"""
Google Business Profile provider

Locations come from the Business Profile account/location APIs; reviews
come from the Places Details API, which needs a separate Place ID.
"""
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from ..core.exceptions import (
    AuthenticationError, AuthorizationRequired, ConfigurationError, PlatformAPIError,
)
from ..core.logging import get_logger
from ..models.schemas import AuthContext, PlatformConfig, PlatformPage, PlatformStatus, StandardReview
from ..services.oauth_service import GoogleOAuthService
from ..utils.normalization import generate_external_id, is_recordable
from .base import PlatformProvider, is_secure_origin

logger = get_logger(__name__)

GOOGLE_CONFIG = PlatformConfig(
    name="google",
    display_name="Google Business Profile",
    color="#4285F4",
    icon_url="https://www.gstatic.com/images/branding/product/1x/google_blue_24dp.png",
    status=PlatformStatus.ACTIVE,
)

LOCATION_READ_MASK = "name,title,storefrontAddress,websiteUri,phoneNumbers,profile"


class GoogleProvider(PlatformProvider):
    """Google OAuth2 authorization-code flow, locations and Places reviews"""

    name = "google"

    def __init__(
        self,
        settings=None,
        http_client: Optional[httpx.AsyncClient] = None,
        oauth_service: Optional[GoogleOAuthService] = None,
    ):
        super().__init__(settings, http_client)
        self.client_id = self.settings.GOOGLE_CLIENT_ID
        if not self.client_id:
            raise ConfigurationError("Google client ID not found in configuration (GOOGLE_CLIENT_ID)")
        self.oauth_service = oauth_service or GoogleOAuthService(self.settings, http_client)

    def get_platform_config(self) -> PlatformConfig:
        return GOOGLE_CONFIG

    def build_authorization_url(self, redirect_uri: Optional[str] = None, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri or self.settings.GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": self.settings.GOOGLE_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{self.settings.GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def authenticate(self, auth: Optional[AuthContext] = None) -> str:
        """
        Complete the authorization-code flow.

        The OAuth callback hands its ``code`` (or ``error``) back in ``auth``.
        Without a code the caller gets ``AuthorizationRequired`` carrying the
        consent URL to redirect the user to.
        """
        auth = auth or AuthContext()
        redirect_uri = auth.redirect_uri or self.settings.GOOGLE_REDIRECT_URI

        if not is_secure_origin(redirect_uri):
            raise AuthenticationError("Google sign-in requires an HTTPS (or localhost) redirect URI")

        if auth.error:
            raise AuthenticationError(f"Google authentication failed: {auth.error}")

        if not auth.code:
            raise AuthorizationRequired(self.build_authorization_url(redirect_uri))

        token_data = await self.oauth_service.exchange_code_for_token(auth.code, redirect_uri)
        return token_data["access_token"]

    async def get_user_pages(self, access_token: str) -> List[PlatformPage]:
        headers = {"Authorization": f"Bearer {access_token}"}

        try:
            accounts_data = await self._get_json(
                f"{self.settings.GOOGLE_ACCOUNT_MANAGEMENT_API}/accounts", headers=headers
            )
        except PlatformAPIError as e:
            logger.error("Error fetching Google accounts", error=str(e))
            raise PlatformAPIError(f"Failed to fetch accounts: {e}", status_code=e.status_code) from e

        pages: List[PlatformPage] = []
        for account in accounts_data.get("accounts", []):
            account_name = account.get("name")
            try:
                locations_data = await self._get_json(
                    f"{self.settings.GOOGLE_BUSINESS_INFORMATION_API}/{account_name}/locations",
                    headers=headers,
                    params={"readMask": LOCATION_READ_MASK},
                )
            except PlatformAPIError as e:
                logger.warning("Skipping Google account locations", account=account_name, error=str(e))
                continue

            for location in locations_data.get("locations", []):
                description = (location.get("profile") or {}).get("description")
                profile_photo = description.get("profilePhoto") if isinstance(description, dict) else None
                pages.append(PlatformPage(
                    id=location["name"],
                    name=location.get("title") or location.get("locationName") or "",
                    profile_picture=(profile_photo or {}).get("url"),
                    url=location.get("websiteUri"),
                    metadata={
                        "address": location.get("storefrontAddress"),
                        "phone_number": (location.get("phoneNumbers") or {}).get("primaryPhone"),
                        "account_name": account_name,
                        "access_token": access_token,
                    },
                ))

        return pages

    async def fetch_reviews(
        self,
        page_id: str,
        access_token: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> List[StandardReview]:
        """Reviews via Places Details; without a Place ID there is nothing to fetch"""
        place_id = (options or {}).get("place_id")
        if not place_id:
            logger.warning(
                "No Place ID provided for Google reviews; Business Profile API does not expose reviews directly",
                location=page_id,
            )
            return []

        api_key = self.settings.GOOGLE_MAPS_API_KEY
        if not api_key:
            raise ConfigurationError("Google Maps API key not configured (GOOGLE_MAPS_API_KEY)")

        data = await self._get_json(
            self.settings.GOOGLE_PLACES_DETAILS_URL,
            params={"place_id": place_id, "fields": "reviews", "key": api_key},
        )

        status = data.get("status")
        if status and status not in ("OK", "ZERO_RESULTS"):
            raise PlatformAPIError(
                f"Failed to fetch reviews: {data.get('error_message') or status}"
            )

        reviews = (data.get("result") or {}).get("reviews", [])
        return [
            self.transform_review(review)
            for review in reviews
            if is_recordable(review.get("text"), review.get("rating"))
        ]

    @staticmethod
    def transform_review(review: Dict[str, Any]) -> StandardReview:
        text = review.get("text") or ""
        return StandardReview(
            external_id=generate_external_id(review.get("time"), text),
            author_name=review.get("author_name") or "Anonymous",
            author_avatar=review.get("profile_photo_url"),
            rating=review.get("rating") or 0,
            content=text,
            published_at=review.get("time"),
            raw_data=review,
        )
