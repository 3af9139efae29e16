"""
Zembra review aggregation API client

Zembra scrapes networks we have no direct review API for. Reviews become
available asynchronously: a review job is created first, then polled.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_fixed,
)

from ..core.config import Settings
from ..core.exceptions import ConfigurationError, PlatformAPIError
from ..core.logging import get_logger
from ..models.schemas import StandardReview
from ..utils.http import JsonApiClient
from ..utils.normalization import generate_external_id, is_recordable, parse_timestamp

logger = get_logger(__name__)

DEFAULT_FIELDS = [
    "id",
    "text",
    "timestamp",
    "rating",
    "recommendation",
    "translation",
    "author",
    "title",
    "reply",
]


def _no_reviews_yet(reviews: List[Dict[str, Any]]) -> bool:
    return not reviews


def _give_up(retry_state: RetryCallState) -> List[Dict[str, Any]]:
    # Polling exhausted: the last (empty) result is final
    return retry_state.outcome.result()


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _score(review: Dict[str, Any]) -> Any:
    """Star rating, or a recommend / don't recommend vote mapped onto it"""
    if review.get("rating") is not None:
        return review["rating"]
    recommendation = review.get("recommendation")
    if recommendation == 1:
        return 5
    if recommendation == -1:
        return 1
    return 0


def to_standard_review(review: Dict[str, Any]) -> Optional[StandardReview]:
    """
    Map one Zembra review onto ``StandardReview``.

    Returns None for entries with neither text nor a rating. Zembra fields
    are loosely typed across networks, so anything of an unexpected shape is
    treated as absent.
    """
    text = _text(review.get("text")) or ""
    score = _score(review)
    if not is_recordable(text, score):
        return None

    author = review.get("author")
    if not isinstance(author, dict):
        author = {"name": author} if isinstance(author, str) else {}
    reply = review.get("reply")
    if not isinstance(reply, dict):
        reply = {}

    return StandardReview(
        external_id=str(review.get("id") or generate_external_id(review.get("timestamp"), text)),
        author_name=_text(author.get("name")) or "Anonymous",
        author_avatar=_text(author.get("photo")),
        rating=score,
        content=text,
        title=_text(review.get("title")),
        published_at=review.get("timestamp"),
        reply_content=_text(reply.get("text")),
        reply_at=reply.get("timestamp") or None,
        raw_data=review,
    )


class ZembraClient(JsonApiClient):
    """Client for create-review-job / get-reviews / listing"""

    api_name = "Zembra"

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings, http_client)
        self.base_url = self.settings.ZEMBRA_API_BASE.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        token = self.settings.ZEMBRA_API_TOKEN
        if not token:
            raise ConfigurationError("Zembra API token not configured (ZEMBRA_API_TOKEN)")
        return {"Accept": "application/json", "Authorization": f"Bearer {token}"}

    @staticmethod
    def _review_params(network: str, slug: str, posted_after: Optional[Any] = None) -> List[tuple]:
        params = [
            ("network", network),
            ("slug", slug),
            ("monitoring", "none"),
            ("sortBy", "timestamp"),
            ("sortDirection", "DESC"),
        ]
        params.extend(("fields[]", field) for field in DEFAULT_FIELDS)
        if posted_after:
            # Zembra expects unix milliseconds
            moment = posted_after if isinstance(posted_after, datetime) else parse_timestamp(posted_after)
            params.append(("postedAfter", str(int(moment.timestamp() * 1000))))
        return params

    async def create_review_job(self, network: str, slug: str, size_limit: Optional[int] = None) -> str:
        """Start a scrape job for a listing; returns the job id"""
        params = self._review_params(network, slug)
        limit = size_limit if size_limit is not None else self.settings.ZEMBRA_SIZE_LIMIT
        if limit:
            # Zembra rejects size limits below 25
            params.append(("sizeLimit", str(max(25, limit))))

        data = await self._post_json(f"{self.base_url}/reviews/", params=params, headers=self._headers())
        try:
            job_id = data["data"]["job"]["jobId"]
        except (KeyError, TypeError) as e:
            raise PlatformAPIError("Zembra returned no job id for the review job") from e

        logger.info("Created Zembra review job", network=network, slug=slug, job_id=job_id)
        return job_id

    async def _get_reviews_once(self, network: str, slug: str, posted_after: Optional[Any]) -> List[Dict[str, Any]]:
        data = await self._get_json(
            f"{self.base_url}/reviews/",
            params=self._review_params(network, slug, posted_after),
            headers=self._headers(),
        )
        if data.get("status") != "SUCCESS":
            return []
        return (data.get("data") or {}).get("reviews") or []

    async def get_reviews(
        self,
        network: str,
        slug: str,
        posted_after: Optional[Any] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch reviews for a listing, polling while the job is still empty.

        Returns an empty list if the job produced nothing within the polling
        budget; upstream errors that outlive the budget are raised.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.ZEMBRA_POLL_ATTEMPTS),
            wait=wait_fixed(self.settings.ZEMBRA_POLL_WAIT_SECONDS),
            retry=retry_if_result(_no_reviews_yet),
            retry_error_callback=_give_up,
            before_sleep=lambda state: logger.info(
                "No Zembra reviews available yet, retrying",
                network=network,
                slug=slug,
                attempt=state.attempt_number,
            ),
        )
        return await retrying(self._get_reviews_once, network, slug, posted_after)

    async def get_listing(self, network: str, slug: str) -> Dict[str, Any]:
        """Verify a listing exists on the network and return its details"""
        data = await self._get_json(
            f"{self.base_url}/listing/{network}/",
            params={"slug": slug},
            headers=self._headers(),
        )
        if data.get("status") != "SUCCESS" or not data.get("data"):
            raise PlatformAPIError(data.get("message") or "Listing not found")
        return data["data"]
