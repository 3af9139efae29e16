"""
Platform Integration Service - connect / refresh orchestration

One call covers a whole ingestion run: resolve the provider, resolve the
connection, authenticate when no page token is at hand, fetch, persist,
trigger sentiment analysis for new reviews and write the sync log.
Callers only ever see a full success or a failure result.
"""
from datetime import timedelta
from typing import Any, Dict, Optional, Set

import httpx

from ..core.config import Settings, get_settings
from ..core.exceptions import (
    AuthorizationRequired, IngestionError, PlatformAPIError, PlatformNotFoundError,
    PlatformUnavailableError,
)
from ..core.logging import get_logger
from ..models.schemas import AuthContext, PlatformConnectionResult, PlatformPage, SyncStats
from ..providers.base import PlatformProvider
from ..providers.registry import PlatformRegistry
from ..utils.normalization import parse_timestamp, utcnow
from .downstream import DownstreamNotifier
from .reviews_service import ReviewsService

logger = get_logger(__name__)


class InFlightGuard:
    """Keys of ingestion runs currently in progress"""

    def __init__(self):
        self._keys: Set[str] = set()

    def acquire(self, key: str) -> bool:
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    def release(self, key: str) -> None:
        self._keys.discard(key)

    def is_busy(self, key: str) -> bool:
        return key in self._keys


def _failure(error: str, connection_id: Optional[str] = None, **extra) -> PlatformConnectionResult:
    return PlatformConnectionResult(success=False, reviews_imported=0, error=error, connection_id=connection_id, **extra)


class PlatformIntegrationService:
    """Coordinates connect-platform and refresh-reviews runs"""

    def __init__(
        self,
        reviews_service: ReviewsService,
        registry: PlatformRegistry,
        notifier: Optional[DownstreamNotifier] = None,
        guard: Optional[InFlightGuard] = None,
        settings: Optional[Settings] = None,
    ):
        self.reviews = reviews_service
        self.registry = registry
        self.notifier = notifier
        self.guard = guard or InFlightGuard()
        self.settings = settings or get_settings()

    def _resolve_provider(self, platform_name: str) -> PlatformProvider:
        provider = self.registry.get_platform_provider(platform_name)
        if provider is None:
            raise PlatformUnavailableError(f"Platform {platform_name} is not available")
        return provider

    async def _discover_page_token(self, provider: PlatformProvider, user_token: str, page_id: str) -> str:
        """Find the page among the user's pages and return its scoped token"""
        pages = await provider.get_user_pages(user_token)
        target = next((page for page in pages if page.id == page_id), None)
        if target is None:
            raise PlatformAPIError(f"Page {page_id} not found in user pages")

        page_token = target.metadata.get("access_token")
        if not page_token:
            raise PlatformAPIError(f"No access token found for page {page_id}")
        return page_token

    async def connect_platform(
        self,
        platform_name: str,
        location_id: str,
        page: PlatformPage,
        auth: Optional[AuthContext] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> PlatformConnectionResult:
        """
        Connect a page to a location and import its reviews

        Args:
            platform_name: Registry name, e.g. "facebook"
            location_id: Tenant location to attach the page to
            page: Page chosen by the user (from get_user_pages or a search)
            auth: Login material, used when the page carries no token
            options: Provider options (e.g. Google ``place_id``)

        Returns:
            Success with the number of imported reviews, or a failure
        """
        key = f"connect:{platform_name}:{location_id}"
        if not self.guard.acquire(key):
            return _failure(f"A {platform_name} sync is already running for this location")

        try:
            return await self._connect(platform_name, location_id, page, auth, dict(options or {}))
        finally:
            self.guard.release(key)

    async def _connect(
        self,
        platform_name: str,
        location_id: str,
        page: PlatformPage,
        auth: Optional[AuthContext],
        options: Dict[str, Any],
    ) -> PlatformConnectionResult:
        connection_id = None
        try:
            provider = self._resolve_provider(platform_name)
            platform = await self.reviews.get_platform_by_name(platform_name)

            page_token = page.metadata.get("access_token")
            connection = await self.reviews.get_or_create_platform_connection(
                location_id,
                platform.id,
                page.id,
                platform_url=page.url,
                access_token=page_token,
            )
            connection_id = connection.id
            metadata = dict(connection.connection_metadata or {})

            if not page_token and provider.requires_user_auth:
                user_token = await provider.authenticate(auth)
                page_token = await self._discover_page_token(provider, user_token, page.id)
                await self.reviews.update_connection_metadata(connection_id, {}, access_token=page_token)

            if options.get("place_id"):
                await self.reviews.update_connection_metadata(connection_id, {"place_id": options["place_id"]})

            return await self._ingest(
                provider, platform_name, connection_id, page.id, page_token or "", options, metadata,
            )
        except AuthorizationRequired as e:
            return _failure(str(e), connection_id, authorization_url=e.authorization_url)
        except (IngestionError, httpx.HTTPError) as e:
            logger.warning("Platform connect failed", platform=platform_name, location_id=location_id, error=str(e))
            await self._log_failure(connection_id, str(e))
            return _failure(str(e), connection_id)
        except Exception as e:
            logger.error(
                "Unexpected error during platform connect",
                platform=platform_name,
                location_id=location_id,
                error=str(e),
                exc_info=True,
            )
            await self._log_unexpected_failure(connection_id, e)
            return _failure(str(e) or type(e).__name__, connection_id)

    async def fetch_reviews(
        self,
        platform_name: str,
        page_id: str,
        connection_id: str,
        auth: Optional[AuthContext] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> PlatformConnectionResult:
        """
        Refresh reviews for an existing connection

        Providers needing a user token re-authenticate and re-discover the
        page token. Incremental providers only fetch reviews posted since
        the last successful fetch, and skip the platform entirely when that
        fetch is more recent than INCREMENTAL_REFRESH_MIN_DAYS.
        """
        key = f"refresh:{platform_name}:{connection_id}"
        if not self.guard.acquire(key):
            return _failure(f"A {platform_name} sync is already running for this connection", connection_id)

        try:
            return await self._refresh(platform_name, page_id, connection_id, auth, dict(options or {}))
        finally:
            self.guard.release(key)

    async def _refresh(
        self,
        platform_name: str,
        page_id: str,
        connection_id: str,
        auth: Optional[AuthContext],
        options: Dict[str, Any],
    ) -> PlatformConnectionResult:
        known_connection_id = None
        try:
            provider = self._resolve_provider(platform_name)
            connection = await self.reviews.get_platform_connection(connection_id)
            if connection is None:
                raise PlatformNotFoundError(f"Platform connection {connection_id} not found")
            known_connection_id = connection.id
            metadata = dict(connection.connection_metadata or {})
            page_token = connection.access_token or ""

            if provider.requires_user_auth:
                user_token = await provider.authenticate(auth)
                page_token = await self._discover_page_token(provider, user_token, page_id)
                await self.reviews.update_connection_metadata(connection_id, {}, access_token=page_token)

            if metadata.get("place_id"):
                options.setdefault("place_id", metadata["place_id"])

            if provider.supports_incremental_fetch and "posted_after" not in options:
                last_fetch_at = metadata.get("last_fetch_at")
                if last_fetch_at:
                    elapsed = utcnow() - parse_timestamp(last_fetch_at)
                    if elapsed < timedelta(days=self.settings.INCREMENTAL_REFRESH_MIN_DAYS):
                        logger.info(
                            "Skipping refresh, last fetch is recent",
                            platform=platform_name,
                            connection_id=connection_id,
                            last_fetch_at=last_fetch_at,
                        )
                        return PlatformConnectionResult(
                            success=True,
                            reviews_imported=0,
                            message=f"{platform_name} reviews are already up to date",
                            connection_id=connection_id,
                        )
                    options["posted_after"] = last_fetch_at

            return await self._ingest(
                provider, platform_name, connection_id, page_id, page_token, options, metadata,
            )
        except AuthorizationRequired as e:
            return _failure(str(e), known_connection_id, authorization_url=e.authorization_url)
        except (IngestionError, httpx.HTTPError) as e:
            logger.warning("Review refresh failed", platform=platform_name, connection_id=connection_id, error=str(e))
            await self._log_failure(known_connection_id, str(e))
            return _failure(str(e), known_connection_id)
        except Exception as e:
            logger.error(
                "Unexpected error during review refresh",
                platform=platform_name,
                connection_id=connection_id,
                error=str(e),
                exc_info=True,
            )
            await self._log_unexpected_failure(known_connection_id, e)
            return _failure(str(e) or type(e).__name__, known_connection_id)

    async def _ingest(
        self,
        provider: PlatformProvider,
        platform_name: str,
        connection_id: str,
        page_id: str,
        page_token: str,
        options: Dict[str, Any],
        metadata: Dict[str, Any],
    ) -> PlatformConnectionResult:
        started_at = utcnow()
        fetch_options = {**options, "page_access_token": page_token}

        reviews = await provider.fetch_reviews(page_id, page_token, fetch_options)

        stats = await self.reviews.save_reviews(connection_id, reviews)
        stats.started_at = started_at

        if provider.supports_incremental_fetch:
            await self.reviews.update_connection_metadata(connection_id, {
                "last_fetch_at": utcnow().isoformat(),
                "review_count": (metadata.get("review_count") or 0) + len(reviews),
            })

        if stats.reviews_new > 0 and self.notifier is not None:
            await self.notifier.trigger_sentiment_analysis(connection_id)

        await self.reviews.create_sync_log(connection_id, stats)

        logger.info(
            "Ingestion run finished",
            platform=platform_name,
            connection_id=connection_id,
            new=stats.reviews_new,
            updated=stats.reviews_updated,
        )
        return PlatformConnectionResult(
            success=True,
            reviews_imported=stats.reviews_imported,
            message=f"Successfully imported {stats.reviews_imported} reviews from {platform_name}",
            connection_id=connection_id,
        )

    async def _log_failure(self, connection_id: Optional[str], error: str) -> None:
        if connection_id is None:
            return
        stats = SyncStats(error_message=error, started_at=utcnow())
        await self.reviews.create_sync_log(connection_id, stats)

    async def _log_unexpected_failure(self, connection_id: Optional[str], error: Exception) -> None:
        # The session may be mid-transaction after a database error
        await self.reviews.rollback()
        await self._log_failure(connection_id, str(error) or type(error).__name__)
