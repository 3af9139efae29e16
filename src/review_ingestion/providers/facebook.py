"""
Facebook Graph API provider
"""
from typing import Any, Dict, List, Optional

import httpx

from ..core.exceptions import (
    AuthenticationError, ConfigurationError, NoReviewsFoundError, PlatformAPIError,
)
from ..core.logging import get_logger
from ..models.schemas import AuthContext, PlatformConfig, PlatformPage, PlatformStatus, StandardReview
from ..utils.normalization import generate_external_id, is_recordable
from .base import PlatformProvider, is_secure_origin

logger = get_logger(__name__)

FACEBOOK_CONFIG = PlatformConfig(
    name="facebook",
    display_name="Facebook",
    color="#1877F2",
    icon_url="https://static.xx.fbcdn.net/rsrc.php/v3/yx/r/pyNVUg5EM0j.png",
    base_url="https://www.facebook.com",
    status=PlatformStatus.ACTIVE,
)

FACEBOOK_PERMISSIONS = [
    "pages_show_list",
    "pages_read_engagement",
    "pages_read_user_content",
]

# Posts mentioning none of these are not treated as reviews
REVIEW_KEYWORDS = (
    "review",
    "recommend",
    "great service",
    "excellent",
    "amazing",
    "terrible",
    "awful",
    "disappointed",
    "experience",
    "staff",
)

PAGE_FIELDS = "id,name,picture,link,category,followers_count,access_token"
RATING_FIELDS = "created_time,recommendation_type,review_text,rating,reviewer"
POST_FIELDS = "id,message,created_time,from"


class FacebookProvider(PlatformProvider):
    """Pages, native ratings and review-like posts from the Graph API"""

    name = "facebook"

    def __init__(self, settings=None, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings, http_client)
        self.app_id = self.settings.FACEBOOK_APP_ID
        if not self.app_id:
            raise ConfigurationError("Facebook App ID not found in configuration (FACEBOOK_APP_ID)")
        self.graph_api_base = self.settings.FACEBOOK_GRAPH_API_BASE

    def get_platform_config(self) -> PlatformConfig:
        return FACEBOOK_CONFIG

    async def authenticate(self, auth: Optional[AuthContext] = None) -> str:
        """
        Validate the result of the client-side SDK login.

        The SDK popup runs in the browser with ``FACEBOOK_PERMISSIONS``; the
        resulting user token is forwarded here. When an app secret is
        configured the short-lived token is upgraded to a long-lived one.
        """
        if auth is None:
            raise AuthenticationError("Facebook SDK login response missing")

        if auth.origin is not None and not is_secure_origin(auth.origin):
            raise AuthenticationError(
                "Facebook login requires HTTPS. Please use https://localhost:3000 "
                "or configure your Facebook app for HTTP development."
            )

        if not auth.access_token:
            raise AuthenticationError("User cancelled login or did not fully authorize")

        if not self.settings.FACEBOOK_APP_SECRET:
            return auth.access_token

        try:
            data = await self._get_json(
                f"{self.graph_api_base}/oauth/access_token",
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": self.app_id,
                    "client_secret": self.settings.FACEBOOK_APP_SECRET,
                    "fb_exchange_token": auth.access_token,
                },
            )
        except PlatformAPIError as e:
            raise AuthenticationError(f"Failed to exchange Facebook token: {e}") from e

        return data.get("access_token") or auth.access_token

    async def get_user_pages(self, access_token: str) -> List[PlatformPage]:
        try:
            data = await self._get_json(
                f"{self.graph_api_base}/me/accounts",
                params={"fields": PAGE_FIELDS, "access_token": access_token},
            )
        except PlatformAPIError as e:
            logger.error("Error fetching Facebook pages", error=str(e))
            raise PlatformAPIError(f"Failed to fetch pages: {e}", status_code=e.status_code) from e

        pages = []
        for page in data.get("data", []):
            picture = (page.get("picture") or {}).get("data") or {}
            pages.append(PlatformPage(
                id=page["id"],
                name=page.get("name", ""),
                profile_picture=picture.get("url"),
                url=page.get("link"),
                metadata={
                    "category": page.get("category"),
                    "followers": page.get("followers_count"),
                    "access_token": page.get("access_token"),
                },
            ))
        return pages

    async def fetch_reviews(
        self,
        page_id: str,
        access_token: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> List[StandardReview]:
        """
        Combine native page ratings with review-like page posts.

        The ratings edge is often permission-restricted; a failure there is
        logged and the posts edge is still consulted. Only when both sources
        come back empty does the call fail.
        """
        ratings = await self._fetch_ratings(page_id, access_token)
        posts = await self._fetch_review_posts(page_id, access_token)
        reviews = ratings + posts

        if not reviews:
            raise NoReviewsFoundError(
                "No reviews found for this Facebook page. The page may have no ratings "
                "or access to ratings is restricted for this app."
            )

        logger.info(
            "Fetched Facebook reviews",
            page_id=page_id,
            ratings_count=len(ratings),
            posts_count=len(posts),
        )
        return reviews

    async def _fetch_ratings(self, page_id: str, access_token: str) -> List[StandardReview]:
        try:
            data = await self._get_json(
                f"{self.graph_api_base}/{page_id}/ratings",
                params={"fields": RATING_FIELDS, "access_token": access_token},
            )
        except (PlatformAPIError, httpx.HTTPError) as e:
            logger.warning("Facebook ratings unavailable, continuing without them", page_id=page_id, error=str(e))
            return []

        reviews = []
        for rating in data.get("data", []):
            review = self.transform_rating(rating)
            if review is not None:
                reviews.append(review)
        return reviews

    async def _fetch_review_posts(self, page_id: str, access_token: str) -> List[StandardReview]:
        try:
            data = await self._get_json(
                f"{self.graph_api_base}/{page_id}/posts",
                params={"fields": POST_FIELDS, "access_token": access_token},
            )
        except (PlatformAPIError, httpx.HTTPError) as e:
            logger.warning("Facebook posts unavailable", page_id=page_id, error=str(e))
            return []

        reviews = []
        for post in data.get("data", []):
            if not is_review_like(post.get("message")):
                continue
            review = self.transform_post(post)
            if review is not None:
                reviews.append(review)
        return reviews

    @staticmethod
    def transform_rating(rating: Dict[str, Any]) -> Optional[StandardReview]:
        text = rating.get("review_text")
        if not text:
            return None

        author_name, author_id = _author(rating.get("reviewer") or rating.get("from"))

        score = rating.get("rating")
        if score is None:
            recommendation = rating.get("recommendation_type")
            if recommendation == "positive":
                score = 5
            elif recommendation == "negative":
                score = 1
            else:
                score = 0

        if not is_recordable(text, score):
            return None

        return StandardReview(
            external_id=generate_external_id(rating.get("created_time"), text),
            author_name=author_name,
            rating=score,
            content=text,
            published_at=rating.get("created_time"),
            raw_data={**rating, "author_id": author_id, "author_name": author_name},
        )

    @staticmethod
    def transform_post(post: Dict[str, Any]) -> Optional[StandardReview]:
        message = post.get("message")
        if not message:
            return None

        external_id = post.get("id") or post.get("created_time")
        if not external_id:
            external_id = generate_external_id(message)

        author_name, author_id = _author(post.get("from"))

        # Posts carry no rating; sentiment analysis scores them later
        return StandardReview(
            external_id=external_id,
            author_name=author_name,
            rating=0,
            content=message,
            published_at=post.get("created_time"),
            raw_data={**post, "author_id": author_id, "author_name": author_name},
        )


def is_review_like(message: Optional[str]) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(keyword in lowered for keyword in REVIEW_KEYWORDS)


def _author(source: Any):
    if isinstance(source, dict):
        return source.get("name") or "anonymous", source.get("id")
    return "anonymous", None
