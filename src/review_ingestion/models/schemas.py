"""
Pydantic schemas for provider output and API requests/responses
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..utils.normalization import clamp_rating, parse_timestamp


# ========== Platform Schemas ==========

class PlatformStatus(str, Enum):
    """Registry status of a platform"""
    ACTIVE = "active"
    COMING_SOON = "coming_soon"
    MAINTENANCE = "maintenance"


class PlatformConfig(BaseModel):
    """Display metadata for a platform"""
    name: str
    display_name: str
    color: str
    icon_url: Optional[str] = None
    base_url: Optional[str] = None
    status: PlatformStatus = PlatformStatus.ACTIVE


class PlatformPage(BaseModel):
    """A page, location or business the user can connect"""
    id: str
    name: str
    profile_picture: Optional[str] = None
    url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ========== Review Schemas ==========

class StandardReview(BaseModel):
    """Canonical review produced by every provider"""
    external_id: str = Field(..., min_length=1, description="Platform-native or synthesized stable id")
    author_name: str = "Anonymous"
    author_avatar: Optional[str] = None
    rating: float = Field(0.0, description="Normalized to the 0-5 scale")
    content: str = ""
    title: Optional[str] = None
    published_at: datetime
    reply_content: Optional[str] = None
    reply_at: Optional[datetime] = None
    raw_data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("rating", mode="before")
    @classmethod
    def _clamp_rating(cls, value: Any) -> float:
        return clamp_rating(value)

    @field_validator("published_at", mode="before")
    @classmethod
    def _parse_published_at(cls, value: Any) -> datetime:
        return parse_timestamp(value)

    @field_validator("reply_at", mode="before")
    @classmethod
    def _parse_reply_at(cls, value: Any) -> Optional[datetime]:
        if value is None:
            return None
        return parse_timestamp(value)


class SyncStats(BaseModel):
    """Outcome of one ingestion run"""
    reviews_fetched: int = 0
    reviews_new: int = 0
    reviews_updated: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None

    @property
    def status(self) -> str:
        return "failed" if self.error_message else "success"

    @property
    def reviews_imported(self) -> int:
        return self.reviews_new + self.reviews_updated


class PlatformConnectionResult(BaseModel):
    """Result surfaced to callers of connect/refresh actions"""
    success: bool
    reviews_imported: int = 0
    error: Optional[str] = None
    message: Optional[str] = None
    connection_id: Optional[str] = None
    # Set when the user must go through the platform consent screen first
    authorization_url: Optional[str] = None


# ========== Auth Schemas ==========

class AuthContext(BaseModel):
    """
    Authentication material forwarded explicitly to a provider.

    Google sends the authorization ``code`` (or ``error``) received on the
    OAuth callback; Facebook sends the user ``access_token`` produced by the
    client-side SDK login. ``origin`` is the page origin the login ran on.
    """
    code: Optional[str] = None
    error: Optional[str] = None
    redirect_uri: Optional[str] = None
    access_token: Optional[str] = None
    origin: Optional[str] = None


class GoogleTokenExchangeRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Authorization code from Google")
    redirect_uri: Optional[str] = None


class GoogleTokenExchangeResponse(BaseModel):
    success: bool = True
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None


class AuthorizationUrlResponse(BaseModel):
    authorization_url: str


# ========== API Request Schemas ==========

class PagesRequest(BaseModel):
    auth: Optional[AuthContext] = None


class YelpSearchRequest(BaseModel):
    company_name: str = Field(..., min_length=1)
    location: Optional[str] = None


class ConnectPlatformRequest(BaseModel):
    location_id: str = Field(..., min_length=1)
    page: PlatformPage
    auth: Optional[AuthContext] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class RefreshReviewsRequest(BaseModel):
    platform_name: str = Field(..., min_length=1)
    page_id: str = Field(..., min_length=1)
    auth: Optional[AuthContext] = None
    options: Dict[str, Any] = Field(default_factory=dict)


# ========== API Response Schemas ==========

class PlatformListResponse(BaseModel):
    platforms: List[PlatformConfig]


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: datetime
    database: str


class ZembraWebhookResult(BaseModel):
    """Answer to a Zembra review push"""
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    connection_id: Optional[str] = None
    reviews_processed: int = 0


class CompanyRefreshRequest(BaseModel):
    requested_by: Optional[str] = None


class CompanyRefreshResult(BaseModel):
    """Outcome of refreshing every connection of a company"""
    success: bool = True
    skipped: bool = False
    reason: Optional[str] = None
    next_eligible_at: Optional[datetime] = None
    cooldown_hours: Optional[int] = None
    locations_processed: int = 0
    reviews_inserted: int = 0
    warnings: List[str] = Field(default_factory=list)
