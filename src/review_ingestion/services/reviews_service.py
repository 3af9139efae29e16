"""
Reviews Service - Database operations for connections, reviews and sync logs
"""
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import ConfigurationError, PlatformNotFoundError
from ..core.logging import get_logger
from ..models.database import Location, Platform, PlatformConnection, Review, SyncLog, ZembraFetchCallLog
from ..models.schemas import StandardReview, SyncStats
from ..utils.normalization import utcnow

logger = get_logger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

# Columns refreshed when an already-stored review is seen again
_UPSERT_COLUMNS = (
    "author_name",
    "author_avatar_url",
    "rating",
    "title",
    "content",
    "published_at",
    "reply_content",
    "reply_at",
    "raw_data",
    "updated_at",
)


class ReviewsService:
    """Persistence boundary of the ingestion pipeline"""

    def __init__(self, db: AsyncSession):
        self.db = db
        dialect = db.get_bind().dialect.name
        if dialect not in _INSERT_BY_DIALECT:
            raise ConfigurationError(f"Review upsert not supported for {dialect} databases")
        self._insert = _INSERT_BY_DIALECT[dialect]

    async def get_platform_by_name(self, name: str) -> Platform:
        """
        Get an active platform catalog row

        Raises:
            PlatformNotFoundError: If the platform is absent or inactive
        """
        result = await self.db.execute(
            select(Platform).where(Platform.name == name, Platform.is_active.is_(True))
        )
        platform = result.scalars().first()
        if platform is None:
            raise PlatformNotFoundError(f"Platform {name} not found")
        return platform

    async def get_platform_connection(self, connection_id: str) -> Optional[PlatformConnection]:
        return await self.db.get(PlatformConnection, connection_id)

    async def _find_connection(self, location_id: str, platform_id: str) -> Optional[PlatformConnection]:
        result = await self.db.execute(
            select(PlatformConnection).where(
                PlatformConnection.location_id == location_id,
                PlatformConnection.platform_id == platform_id,
            )
        )
        return result.scalars().first()

    async def get_or_create_platform_connection(
        self,
        location_id: str,
        platform_id: str,
        platform_location_id: str,
        platform_url: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> PlatformConnection:
        """
        Get the connection for (location, platform), creating it if absent

        A concurrent insert losing the race on the unique constraint is
        treated as "already exists" and the winner's row is returned.

        Args:
            location_id: Tenant location ID
            platform_id: Platform catalog ID
            platform_location_id: Page/location/business ID on the platform
            platform_url: Public URL of the page (optional)
            access_token: Page-scoped token (optional)

        Returns:
            The existing or newly created connection
        """
        connection = await self._find_connection(location_id, platform_id)
        if connection is not None:
            return connection

        connection = PlatformConnection(
            location_id=location_id,
            platform_id=platform_id,
            platform_location_id=platform_location_id,
            platform_url=platform_url,
            access_token=access_token,
            connection_metadata={},
            is_active=True,
        )
        self.db.add(connection)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Platform connection created concurrently, reusing it",
                location_id=location_id,
                platform_id=platform_id,
            )
            existing = await self._find_connection(location_id, platform_id)
            if existing is None:
                raise
            return existing

        await self.db.refresh(connection)
        logger.info("Created platform connection", connection_id=connection.id, location_id=location_id)
        return connection

    async def update_connection_metadata(
        self,
        connection_id: str,
        metadata: Dict[str, Any],
        access_token: Optional[str] = None,
    ) -> Optional[PlatformConnection]:
        """Merge metadata into a connection (and optionally replace its token)"""
        connection = await self.get_platform_connection(connection_id)
        if connection is None:
            return None

        connection.connection_metadata = {**(connection.connection_metadata or {}), **metadata}
        if access_token:
            connection.access_token = access_token
        await self.db.commit()
        await self.db.refresh(connection)
        return connection

    async def rollback(self) -> None:
        await self.db.rollback()

    async def _upsert_review(self, connection_id: str, review: StandardReview) -> bool:
        """Insert or update one review; returns True when the row is new"""
        now = utcnow()
        values = {
            "platform_connection_id": connection_id,
            "external_id": review.external_id,
            "author_name": review.author_name,
            "author_avatar_url": review.author_avatar,
            "rating": review.rating,
            "title": review.title,
            "content": review.content,
            "published_at": review.published_at,
            "reply_content": review.reply_content,
            "reply_at": review.reply_at,
            "raw_data": review.raw_data,
            "created_at": now,
            "updated_at": now,
        }
        stmt = self._insert(Review).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Review.platform_connection_id, Review.external_id],
            set_={column: stmt.excluded[column] for column in _UPSERT_COLUMNS},
        ).returning(Review.created_at, Review.updated_at)

        row = (await self.db.execute(stmt)).one()
        # Only a fresh insert carries the same stamp in both columns
        return row.created_at == row.updated_at

    async def save_reviews(self, connection_id: str, reviews: List[StandardReview]) -> SyncStats:
        """
        Upsert reviews one by one on (connection, external_id)

        Each review commits on its own; a failing review is rolled back and
        recorded in ``error_message`` while the rest of the batch proceeds.
        A review repeated within the batch is stored once, last copy wins.

        Args:
            connection_id: Platform connection ID
            reviews: Normalized reviews from a provider

        Returns:
            Sync statistics for the batch
        """
        unique: Dict[str, StandardReview] = {}
        for review in reviews:
            unique[review.external_id] = review
        if len(unique) < len(reviews):
            logger.info(
                "Dropped duplicate reviews from batch",
                connection_id=connection_id,
                duplicates=len(reviews) - len(unique),
            )
        reviews = list(unique.values())

        stats = SyncStats(reviews_fetched=len(reviews), started_at=utcnow())
        errors: List[str] = []

        for index, review in enumerate(reviews, start=1):
            try:
                is_new = await self._upsert_review(connection_id, review)
                await self.db.commit()
            except (SQLAlchemyError, ValueError, TypeError) as e:
                await self.db.rollback()
                message = f"Failed to save review #{index} ({review.external_id}): {e}"
                logger.error("Review upsert failed", connection_id=connection_id, error=message)
                errors.append(message)
                continue

            if is_new:
                stats.reviews_new += 1
            else:
                stats.reviews_updated += 1

        if errors:
            stats.error_message = "; ".join(errors)

        logger.info(
            "Saved reviews",
            connection_id=connection_id,
            fetched=stats.reviews_fetched,
            new=stats.reviews_new,
            updated=stats.reviews_updated,
            failed=len(errors),
        )
        return stats

    async def create_sync_log(self, connection_id: str, stats: SyncStats) -> Optional[SyncLog]:
        """
        Record one ingestion run and stamp the connection's last sync time

        Failures are logged and swallowed; the audit trail never fails a sync.
        """
        completed_at = utcnow()
        try:
            sync_log = SyncLog(
                platform_connection_id=connection_id,
                status=stats.status,
                reviews_fetched=stats.reviews_fetched,
                reviews_new=stats.reviews_new,
                reviews_updated=stats.reviews_updated,
                error_message=stats.error_message,
                started_at=stats.started_at or completed_at,
                completed_at=completed_at,
            )
            self.db.add(sync_log)

            connection = await self.get_platform_connection(connection_id)
            if connection is not None:
                connection.last_sync_at = completed_at

            await self.db.commit()
            return sync_log
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to write sync log", connection_id=connection_id, error=str(e))
            return None

    # ========== Zembra push and bulk refresh ==========

    async def find_connection_by_platform_location_id(
        self, platform_location_id: str,
    ) -> Optional[PlatformConnection]:
        """Oldest connection bound to a page/place/business ID on the platform"""
        result = await self.db.execute(
            select(PlatformConnection)
            .where(PlatformConnection.platform_location_id == platform_location_id)
            .order_by(PlatformConnection.created_at)
        )
        return result.scalars().first()

    async def company_exists(self, company_id: str) -> bool:
        result = await self.db.execute(select(Location.id).where(Location.company_id == company_id).limit(1))
        return result.first() is not None

    async def get_company_connections(self, company_id: str) -> List[Tuple[PlatformConnection, str]]:
        """
        Active connections of a company's active locations

        Returns:
            (connection, platform name) pairs ordered by location
        """
        result = await self.db.execute(
            select(PlatformConnection, Platform.name)
            .join(Platform, PlatformConnection.platform_id == Platform.id)
            .join(Location, PlatformConnection.location_id == Location.id)
            .where(
                Location.company_id == company_id,
                Location.is_active.is_(True),
                PlatformConnection.is_active.is_(True),
            )
            .order_by(PlatformConnection.location_id, PlatformConnection.created_at)
        )
        return [(connection, platform_name) for connection, platform_name in result.all()]

    async def get_latest_fetch_call(self, company_id: str) -> Optional[ZembraFetchCallLog]:
        """Most recent company-wide refresh that did not end in error"""
        result = await self.db.execute(
            select(ZembraFetchCallLog)
            .where(ZembraFetchCallLog.company_id == company_id, ZembraFetchCallLog.status != "error")
            .order_by(ZembraFetchCallLog.triggered_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def start_fetch_call(self, company_id: str, requested_by: Optional[str] = None) -> ZembraFetchCallLog:
        fetch_call = ZembraFetchCallLog(
            company_id=company_id,
            requested_by=requested_by,
            status="pending",
            triggered_at=utcnow(),
        )
        self.db.add(fetch_call)
        await self.db.commit()
        await self.db.refresh(fetch_call)
        return fetch_call

    async def finish_fetch_call(
        self,
        fetch_call_id: str,
        status: str,
        locations_processed: int = 0,
        reviews_inserted: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        """Close a company-wide refresh; failures are logged and swallowed"""
        try:
            fetch_call = await self.db.get(ZembraFetchCallLog, fetch_call_id)
            if fetch_call is None:
                return
            fetch_call.status = status
            fetch_call.locations_processed = locations_processed
            fetch_call.reviews_inserted = reviews_inserted
            fetch_call.error_message = error_message
            fetch_call.completed_at = utcnow()
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to update Zembra fetch log", fetch_call_id=fetch_call_id, error=str(e))
