"""
Zembra push and company-wide ingestion

Besides the per-connection connect / refresh runs, reviews arrive two more
ways: Zembra pushes finished review jobs to a webhook, and a company can
refresh every one of its listings at once. Both paths persist through the
same ReviewsService and write the same sync logs.
"""
import hmac
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx

from ..core.config import Settings, get_settings
from ..core.exceptions import (
    AuthenticationError, CompanyNotFoundError, ConfigurationError, IngestionError, PlatformAPIError,
)
from ..core.logging import get_logger
from ..models.schemas import CompanyRefreshResult, StandardReview, SyncStats, ZembraWebhookResult
from ..utils.normalization import parse_timestamp, utcnow
from .downstream import DownstreamNotifier
from .reviews_service import ReviewsService
from .zembra_client import ZembraClient, to_standard_review

logger = get_logger(__name__)

REVIEWS_WEBHOOK_TYPE = "reviews"


def _standard_reviews(raw_reviews: List[Dict[str, Any]]) -> List[StandardReview]:
    reviews = []
    for raw in raw_reviews:
        if not isinstance(raw, dict):
            continue
        review = to_standard_review(raw)
        if review is not None:
            reviews.append(review)
    return reviews


class ZembraIngestionService:
    """Webhook intake and bulk refresh for Zembra-backed listings"""

    def __init__(
        self,
        reviews_service: ReviewsService,
        zembra_client: ZembraClient,
        notifier: Optional[DownstreamNotifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.reviews = reviews_service
        self.zembra = zembra_client
        self.notifier = notifier
        self.settings = settings or get_settings()

    def verify_webhook_token(self, token: Optional[str]) -> None:
        """
        Check the shared secret Zembra sends in ``X-Zembra-Token``

        Raises:
            ConfigurationError: If no Zembra token is configured
            AuthenticationError: If the token is missing or wrong
        """
        expected = self.settings.ZEMBRA_API_TOKEN
        if not expected:
            raise ConfigurationError("Zembra API token not configured (ZEMBRA_API_TOKEN)")
        if not token or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            raise AuthenticationError("Invalid or missing Zembra webhook token")

    async def _record_fetch(
        self,
        connection_id: str,
        metadata: Dict[str, Any],
        fetched: int,
        stats: SyncStats,
        job_id: Optional[str] = None,
    ) -> None:
        update = {
            "last_fetch_at": utcnow().isoformat(),
            "review_count": (metadata.get("review_count") or 0) + fetched,
        }
        if job_id:
            update["zembra_job_id"] = job_id
        await self.reviews.update_connection_metadata(connection_id, update)

        if stats.reviews_new > 0 and self.notifier is not None:
            await self.notifier.trigger_sentiment_analysis(connection_id)

        await self.reviews.create_sync_log(connection_id, stats)

    async def ingest_webhook(self, payload: Dict[str, Any]) -> ZembraWebhookResult:
        """
        Persist the reviews of a finished Zembra job

        The listing slug in the payload selects the connection. Non-review
        notifications are acknowledged and ignored.

        Raises:
            PlatformAPIError: If a reviews payload has no slug or no review list
        """
        if payload.get("type") != REVIEWS_WEBHOOK_TYPE:
            return ZembraWebhookResult(success=True, message="Not a reviews webhook, ignoring")

        data = payload.get("data")
        if not isinstance(data, dict):
            raise PlatformAPIError("Zembra webhook payload has no data")
        job = data.get("job") if isinstance(data.get("job"), dict) else {}
        target = data.get("target") if isinstance(data.get("target"), dict) else {}
        slug = target.get("slug") or job.get("slug")
        raw_reviews = data.get("reviews")
        if not slug or not isinstance(raw_reviews, list):
            raise PlatformAPIError("Zembra webhook payload has no listing slug or reviews")

        logger.info("Processing Zembra webhook", job_id=job.get("jobId"), slug=slug, reviews=len(raw_reviews))

        connection = await self.reviews.find_connection_by_platform_location_id(slug)
        if connection is None:
            logger.warning("No platform connection for Zembra slug", slug=slug)
            return ZembraWebhookResult(success=False, error=f"No platform connection found for slug: {slug}")
        connection_id = connection.id
        metadata = dict(connection.connection_metadata or {})

        started_at = utcnow()
        reviews = _standard_reviews(raw_reviews)
        stats = await self.reviews.save_reviews(connection_id, reviews)
        stats.started_at = started_at
        await self._record_fetch(connection_id, metadata, len(raw_reviews), stats, job_id=job.get("jobId"))

        return ZembraWebhookResult(
            success=True,
            message=f"Processed {stats.reviews_imported} reviews",
            connection_id=connection_id,
            reviews_processed=stats.reviews_imported,
        )

    async def refresh_company(self, company_id: str, requested_by: Optional[str] = None) -> CompanyRefreshResult:
        """
        Refresh every active connection of a company through Zembra

        At most one run per company is started within
        ZEMBRA_FETCH_COOLDOWN_HOURS; a pending run counts. Failing
        connections are reported as warnings and do not stop the others.

        Raises:
            ConfigurationError: If no Zembra token is configured
            CompanyNotFoundError: If the company has no known location
        """
        if not self.settings.ZEMBRA_API_TOKEN:
            raise ConfigurationError("Zembra API token not configured (ZEMBRA_API_TOKEN)")
        if not await self.reviews.company_exists(company_id):
            raise CompanyNotFoundError(f"Company {company_id} not found")

        cooldown_hours = self.settings.ZEMBRA_FETCH_COOLDOWN_HOURS
        latest = await self.reviews.get_latest_fetch_call(company_id)
        if latest is not None:
            triggered_at = parse_timestamp(latest.triggered_at)
            next_eligible_at = triggered_at + timedelta(hours=cooldown_hours)
            if utcnow() < next_eligible_at:
                logger.info("Company refresh in cooldown", company_id=company_id, next_eligible_at=next_eligible_at)
                return CompanyRefreshResult(
                    skipped=True,
                    reason=f"Zembra reviews fetch already triggered within the last {cooldown_hours} hours",
                    next_eligible_at=next_eligible_at,
                    cooldown_hours=cooldown_hours,
                )

        fetch_call = await self.reviews.start_fetch_call(company_id, requested_by)
        fetch_call_id = fetch_call.id

        try:
            result = await self._refresh_connections(company_id)
        except Exception as e:
            logger.error("Company refresh failed", company_id=company_id, error=str(e), exc_info=True)
            await self.reviews.rollback()
            await self.reviews.finish_fetch_call(fetch_call_id, "error", error_message=str(e))
            raise

        await self.reviews.finish_fetch_call(
            fetch_call_id,
            "success",
            locations_processed=result.locations_processed,
            reviews_inserted=result.reviews_inserted,
            error_message="; ".join(result.warnings) or None,
        )
        return result

    async def _refresh_connections(self, company_id: str) -> CompanyRefreshResult:
        # Plain values only: rollbacks inside save_reviews expire ORM rows
        targets = [
            (connection.id, connection.location_id, connection.platform_location_id,
             dict(connection.connection_metadata or {}), platform_name)
            for connection, platform_name in await self.reviews.get_company_connections(company_id)
        ]

        result = CompanyRefreshResult(locations_processed=len({target[1] for target in targets}))
        for connection_id, _, slug, metadata, network in targets:
            if not slug:
                logger.warning("Skipping connection without listing slug", connection_id=connection_id)
                continue

            started_at = utcnow()
            try:
                await self.zembra.create_review_job(network, slug)
                raw_reviews = await self.zembra.get_reviews(network, slug)
            except (IngestionError, httpx.HTTPError) as e:
                logger.warning("Zembra fetch failed", connection_id=connection_id, network=network, error=str(e))
                result.warnings.append(f"Connection {connection_id}: {e}")
                failed = SyncStats(error_message=str(e), started_at=started_at)
                await self.reviews.create_sync_log(connection_id, failed)
                continue

            reviews = _standard_reviews(raw_reviews)
            if not reviews:
                continue

            stats = await self.reviews.save_reviews(connection_id, reviews)
            stats.started_at = started_at
            result.reviews_inserted += stats.reviews_new
            if stats.error_message:
                result.warnings.append(f"Connection {connection_id}: {stats.error_message}")
            await self._record_fetch(connection_id, metadata, len(raw_reviews), stats)

        logger.info(
            "Company refresh finished",
            company_id=company_id,
            locations=result.locations_processed,
            reviews_inserted=result.reviews_inserted,
            warnings=len(result.warnings),
        )
        return result
