"""
Database models for Review Ingestion Service
"""
import uuid

from sqlalchemy import (
    Column, String, DateTime, Boolean, Float, Integer,
    Text, JSON, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.normalization import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class Platform(Base):
    """Review platform catalog entry (maintained outside this service)"""
    __tablename__ = "platforms"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=False)
    icon_url = Column(String(512), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    connections = relationship("PlatformConnection", back_populates="platform")

    def __repr__(self):
        return f"<Platform(id={self.id}, name={self.name})>"


class PlatformConnection(Base):
    """Binding of a tenant location to a platform page/place"""
    __tablename__ = "platform_connections"

    id = Column(String(36), primary_key=True, default=_uuid)
    location_id = Column(String(36), nullable=False)
    platform_id = Column(String(36), ForeignKey("platforms.id"), nullable=False)
    platform_location_id = Column(String(255), nullable=False)
    platform_url = Column(String(1024), nullable=True)
    access_token = Column(Text, nullable=True)
    connection_metadata = Column("metadata", JSON, default=dict, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    platform = relationship("Platform", back_populates="connections")

    __table_args__ = (
        UniqueConstraint("location_id", "platform_id", name="uq_platform_connections_location_platform"),
        Index("ix_platform_connections_location_active", "location_id", "is_active"),
    )

    def __repr__(self):
        return f"<PlatformConnection(id={self.id}, location_id={self.location_id}, platform_id={self.platform_id})>"


class Review(Base):
    """Canonical persisted review"""
    __tablename__ = "reviews"

    id = Column(String(36), primary_key=True, default=_uuid)
    platform_connection_id = Column(
        String(36), ForeignKey("platform_connections.id", ondelete="CASCADE"), nullable=False
    )
    external_id = Column(String(255), nullable=False)
    author_name = Column(String(255), nullable=False)
    author_avatar_url = Column(String(1024), nullable=True)
    rating = Column(Float, nullable=False, default=0.0)
    title = Column(String(512), nullable=True)
    content = Column(Text, nullable=False, default="")
    published_at = Column(DateTime(timezone=True), nullable=False)
    reply_content = Column(Text, nullable=True)
    reply_at = Column(DateTime(timezone=True), nullable=True)
    raw_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("platform_connection_id", "external_id", name="uq_reviews_connection_external_id"),
        Index("ix_reviews_published_at", "published_at"),
    )

    def __repr__(self):
        return f"<Review(id={self.id}, external_id={self.external_id})>"


class SyncLog(Base):
    """Append-only audit row, one per ingestion run"""
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform_connection_id = Column(
        String(36), ForeignKey("platform_connections.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(String(20), nullable=False)  # success, failed
    reviews_fetched = Column(Integer, default=0, nullable=False)
    reviews_new = Column(Integer, default=0, nullable=False)
    reviews_updated = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_sync_logs_connection_started", "platform_connection_id", "started_at"),
    )

    def __repr__(self):
        return f"<SyncLog(id={self.id}, status={self.status})>"


class Location(Base):
    """Tenant location (maintained outside this service)"""
    __tablename__ = "locations"

    id = Column(String(36), primary_key=True, default=_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Location(id={self.id}, company_id={self.company_id})>"


class ZembraFetchCallLog(Base):
    """One company-wide review refresh; the latest non-error row drives the cooldown"""
    __tablename__ = "zembra_fetch_call_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    company_id = Column(String(36), nullable=False)
    requested_by = Column(String(36), nullable=True)
    status = Column(String(20), nullable=False, default="pending")  # pending, success, error
    locations_processed = Column(Integer, default=0, nullable=False)
    reviews_inserted = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    triggered_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_zembra_fetch_call_logs_company_triggered", "company_id", "triggered_at"),
    )

    def __repr__(self):
        return f"<ZembraFetchCallLog(id={self.id}, company_id={self.company_id}, status={self.status})>"
