"""
API Routes for Review Ingestion Service
"""
import json
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import get_db
from ..core.exceptions import (
    AuthenticationError, AuthorizationRequired, CompanyNotFoundError, ConfigurationError, IngestionError,
    PlatformAPIError, PlatformNotFoundError, PlatformUnavailableError,
)
from ..core.logging import get_logger
from ..models.schemas import (
    AuthorizationUrlResponse,
    CompanyRefreshRequest, CompanyRefreshResult,
    ConnectPlatformRequest,
    GoogleTokenExchangeRequest, GoogleTokenExchangeResponse,
    HealthCheckResponse,
    PagesRequest,
    PlatformConnectionResult,
    PlatformListResponse,
    PlatformPage,
    RefreshReviewsRequest,
    YelpSearchRequest,
    ZembraWebhookResult,
)
from ..providers.base import PlatformProvider
from ..providers.google import GoogleProvider
from ..providers.registry import PlatformRegistry
from ..providers.yelp import YelpProvider
from ..services.downstream import DownstreamNotifier
from ..services.integration_service import InFlightGuard, PlatformIntegrationService
from ..services.oauth_service import GoogleOAuthService
from ..services.reviews_service import ReviewsService
from ..services.zembra_client import ZembraClient
from ..services.zembra_ingestion import ZembraIngestionService
from ..utils.normalization import utcnow

logger = get_logger(__name__)

router = APIRouter()


# ========== Dependencies ==========

def get_registry(request: Request) -> PlatformRegistry:
    return request.app.state.registry


def get_notifier(request: Request) -> DownstreamNotifier:
    return request.app.state.notifier


def get_guard(request: Request) -> InFlightGuard:
    return request.app.state.guard


def get_zembra_client(request: Request) -> ZembraClient:
    return request.app.state.zembra


def get_oauth_service() -> GoogleOAuthService:
    return GoogleOAuthService(settings)


def get_integration_service(
    db: AsyncSession = Depends(get_db),
    registry: PlatformRegistry = Depends(get_registry),
    notifier: DownstreamNotifier = Depends(get_notifier),
    guard: InFlightGuard = Depends(get_guard),
) -> PlatformIntegrationService:
    return PlatformIntegrationService(ReviewsService(db), registry, notifier, guard, settings)


def get_zembra_ingestion_service(
    db: AsyncSession = Depends(get_db),
    zembra: ZembraClient = Depends(get_zembra_client),
    notifier: DownstreamNotifier = Depends(get_notifier),
) -> ZembraIngestionService:
    return ZembraIngestionService(ReviewsService(db), zembra, notifier, settings)


def _http_error(exc: IngestionError) -> HTTPException:
    """Map pipeline errors onto HTTP status codes"""
    if isinstance(exc, AuthorizationRequired):
        return HTTPException(
            status_code=401,
            detail={"message": str(exc), "authorization_url": exc.authorization_url},
        )
    if isinstance(exc, AuthenticationError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (PlatformUnavailableError, PlatformNotFoundError, CompanyNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def _provider(registry: PlatformRegistry, name: str) -> PlatformProvider:
    provider = registry.get_platform_provider(name)
    if provider is None:
        raise PlatformUnavailableError(f"Platform {name} is not available")
    return provider


# ========== Health Check ==========

@router.get("/health", response_model=HealthCheckResponse, tags=["General"])
async def health_check(db: AsyncSession = Depends(get_db)):
    """Health check endpoint"""
    try:
        await db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError as e:
        logger.error("Database health check failed", error=str(e))
        db_status = "disconnected"

    return HealthCheckResponse(
        status="healthy" if db_status == "connected" else "unhealthy",
        service=settings.APP_NAME,
        version=settings.APP_VERSION,
        timestamp=utcnow(),
        database=db_status,
    )


# ========== Platforms ==========

@router.get("/platforms", response_model=PlatformListResponse, tags=["Platforms"])
async def list_platforms(
    active_only: bool = Query(False, description="Only platforms that can be connected"),
    registry: PlatformRegistry = Depends(get_registry),
):
    """List registered platforms with their display config and status"""
    platforms = registry.get_active_platforms() if active_only else registry.get_all_platforms()
    return PlatformListResponse(platforms=platforms)


@router.post("/platforms/yelp/search", response_model=List[PlatformPage], tags=["Platforms"])
async def search_yelp_businesses(
    request: YelpSearchRequest,
    registry: PlatformRegistry = Depends(get_registry),
):
    """
    Search Yelp businesses to connect

    - **company_name**: Business name to search for
    - **location**: City or address to narrow the search (optional)
    """
    try:
        provider = _provider(registry, "yelp")
        if not isinstance(provider, YelpProvider):
            raise PlatformUnavailableError("Platform yelp does not support business search")
        return await provider.search_businesses(request.company_name, request.location)
    except IngestionError as e:
        logger.warning("Yelp business search failed", error=str(e))
        raise _http_error(e) from e


@router.post("/platforms/{platform_name}/pages", response_model=List[PlatformPage], tags=["Platforms"])
async def list_user_pages(
    platform_name: str,
    request: PagesRequest,
    registry: PlatformRegistry = Depends(get_registry),
):
    """Authenticate with the platform and list the pages the user can connect"""
    try:
        provider = _provider(registry, platform_name)
        access_token = await provider.authenticate(request.auth)
        return await provider.get_user_pages(access_token)
    except IngestionError as e:
        logger.warning("Listing platform pages failed", platform=platform_name, error=str(e))
        raise _http_error(e) from e


@router.post("/platforms/{platform_name}/connect", response_model=PlatformConnectionResult, tags=["Platforms"])
async def connect_platform(
    platform_name: str,
    request: ConnectPlatformRequest,
    service: PlatformIntegrationService = Depends(get_integration_service),
):
    """
    Connect a page to a location and import its reviews

    Always answers 200; ``success`` tells whether the import went through.
    """
    return await service.connect_platform(
        platform_name,
        request.location_id,
        request.page,
        auth=request.auth,
        options=request.options,
    )


@router.post("/connections/{connection_id}/refresh", response_model=PlatformConnectionResult, tags=["Platforms"])
async def refresh_reviews(
    connection_id: str,
    request: RefreshReviewsRequest,
    service: PlatformIntegrationService = Depends(get_integration_service),
):
    """Fetch new reviews for an existing connection"""
    return await service.fetch_reviews(
        request.platform_name,
        request.page_id,
        connection_id,
        auth=request.auth,
        options=request.options,
    )


# ========== Google OAuth ==========

@router.get("/auth/google/url", response_model=AuthorizationUrlResponse, tags=["OAuth"])
async def google_authorization_url(
    redirect_uri: Optional[str] = None,
    state: Optional[str] = None,
    registry: PlatformRegistry = Depends(get_registry),
):
    """Consent screen URL to redirect the user to"""
    try:
        provider = _provider(registry, "google")
        if not isinstance(provider, GoogleProvider):
            raise PlatformUnavailableError("Platform google does not support OAuth redirects")
        return AuthorizationUrlResponse(authorization_url=provider.build_authorization_url(redirect_uri, state))
    except IngestionError as e:
        raise _http_error(e) from e


@router.post("/auth/google/exchange", response_model=GoogleTokenExchangeResponse, tags=["OAuth"])
async def exchange_google_code(
    request: GoogleTokenExchangeRequest,
    oauth_service: GoogleOAuthService = Depends(get_oauth_service),
):
    """Exchange an authorization code for tokens; the client secret stays server-side"""
    try:
        token_data = await oauth_service.exchange_code_for_token(request.code, request.redirect_uri)
    except IngestionError as e:
        raise _http_error(e) from e

    return GoogleTokenExchangeResponse(
        access_token=token_data["access_token"],
        refresh_token=token_data.get("refresh_token"),
        expires_in=token_data.get("expires_in"),
        token_type=token_data.get("token_type"),
        scope=token_data.get("scope"),
    )


# ========== Zembra ==========

@router.post("/webhooks/zembra", response_model=ZembraWebhookResult, tags=["Webhooks"])
async def zembra_webhook(
    request: Request,
    x_zembra_token: Optional[str] = Header(None),
    service: ZembraIngestionService = Depends(get_zembra_ingestion_service),
):
    """
    Receive reviews pushed by Zembra

    An empty body is a liveness ping. Reviews for a slug no connection is
    bound to are acknowledged with ``success: false``.
    """
    try:
        service.verify_webhook_token(x_zembra_token)
    except IngestionError as e:
        logger.warning("Zembra webhook rejected", error=str(e))
        raise _http_error(e) from e

    body = await request.body()
    if not body.strip():
        return ZembraWebhookResult(success=True, message="Webhook endpoint is active. Awaiting review data.")

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    try:
        return await service.ingest_webhook(payload)
    except PlatformAPIError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.post("/companies/{company_id}/refresh-reviews", response_model=CompanyRefreshResult, tags=["Platforms"])
async def refresh_company_reviews(
    company_id: str,
    request: Optional[CompanyRefreshRequest] = None,
    service: ZembraIngestionService = Depends(get_zembra_ingestion_service),
):
    """
    Refresh every connected listing of a company through Zembra

    Runs at most once per company within the cooldown window; a skipped
    call still answers 200 with ``skipped: true``.
    """
    try:
        return await service.refresh_company(company_id, request.requested_by if request else None)
    except IngestionError as e:
        logger.warning("Company refresh rejected", company_id=company_id, error=str(e))
        raise _http_error(e) from e
