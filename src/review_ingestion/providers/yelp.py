"""
Yelp provider

Businesses are discovered through Yelp Fusion search; reviews are pulled
through Zembra because Fusion only ever exposes a three-review excerpt.
"""
from typing import Any, Dict, List, Optional

import httpx

from ..core.exceptions import ConfigurationError, PlatformAPIError
from ..core.logging import get_logger
from ..models.schemas import AuthContext, PlatformConfig, PlatformPage, PlatformStatus, StandardReview
from ..services.zembra_client import ZembraClient, to_standard_review
from .base import PlatformProvider

logger = get_logger(__name__)

YELP_CONFIG = PlatformConfig(
    name="yelp",
    display_name="Yelp",
    color="#D32323",
    icon_url="https://s3-media0.fl.yelpcdn.com/assets/srv0/yelp_design_web/b085a608c15f/assets/img/logos/favicon.ico",
    base_url="https://www.yelp.com",
    status=PlatformStatus.ACTIVE,
)

SEARCH_LIMIT = 20
ZEMBRA_NETWORK = "yelp"


class YelpProvider(PlatformProvider):
    """Server-keyed Yelp integration; no end-user login involved"""

    name = "yelp"
    requires_user_auth = False
    supports_incremental_fetch = True

    def __init__(
        self,
        settings=None,
        http_client: Optional[httpx.AsyncClient] = None,
        zembra_client: Optional[ZembraClient] = None,
    ):
        super().__init__(settings, http_client)
        self.api_base = self.settings.YELP_API_BASE.rstrip("/")
        self._owns_zembra = zembra_client is None
        self.zembra = zembra_client or ZembraClient(self.settings, http_client)

    def get_platform_config(self) -> PlatformConfig:
        return YELP_CONFIG

    async def authenticate(self, auth: Optional[AuthContext] = None) -> str:
        # API keys live server-side, there is no user token to obtain
        return ""

    async def get_user_pages(self, access_token: str) -> List[PlatformPage]:
        raise PlatformAPIError("Yelp has no user pages; use search_businesses to find a business")

    async def search_businesses(self, company_name: str, location: Optional[str] = None) -> List[PlatformPage]:
        """Search Yelp Fusion for businesses matching a name (and optional location)"""
        api_key = self.settings.YELP_API_KEY
        if not api_key:
            raise ConfigurationError("Yelp API key not configured (YELP_API_KEY)")

        params: Dict[str, Any] = {"term": company_name, "limit": SEARCH_LIMIT}
        if location:
            params["location"] = location

        data = await self._get_json(
            f"{self.api_base}/businesses/search",
            params=params,
            headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
        )

        pages = []
        for business in data.get("businesses", []):
            address = business.get("location") or {}
            pages.append(PlatformPage(
                id=business["alias"] if business.get("alias") else business["id"],
                name=business.get("name", ""),
                profile_picture=business.get("image_url") or None,
                url=business.get("url"),
                metadata={
                    "business_id": business.get("id"),
                    "address": ", ".join(address.get("display_address") or []),
                    "city": address.get("city"),
                    "state": address.get("state"),
                    "rating": business.get("rating"),
                    "review_count": business.get("review_count"),
                },
            ))

        logger.info("Yelp business search", term=company_name, location=location, results=len(pages))
        return pages

    async def fetch_reviews(
        self,
        page_id: str,
        access_token: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> List[StandardReview]:
        """
        Fetch reviews for a business slug through Zembra.

        ``options["posted_after"]`` limits the fetch to reviews newer than
        the given moment.
        """
        options = options or {}
        posted_after = options.get("posted_after")

        await self.zembra.create_review_job(ZEMBRA_NETWORK, page_id, options.get("size_limit"))
        raw_reviews = await self.zembra.get_reviews(ZEMBRA_NETWORK, page_id, posted_after)

        reviews = []
        for raw in raw_reviews:
            review = self.transform_review(raw)
            if review is not None:
                reviews.append(review)

        logger.info("Fetched Yelp reviews", slug=page_id, count=len(reviews), incremental=bool(posted_after))
        return reviews

    @staticmethod
    def transform_review(review: Dict[str, Any]) -> Optional[StandardReview]:
        return to_standard_review(review)

    async def aclose(self) -> None:
        if self._owns_zembra:
            await self.zembra.aclose()
        await super().aclose()
