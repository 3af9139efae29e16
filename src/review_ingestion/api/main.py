"""
FastAPI application initialization
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..core.config import settings
from ..core.database import close_db, init_db
from ..core.logging import get_logger, setup_logging
from ..providers.registry import create_default_registry
from ..services.downstream import DownstreamNotifier
from ..services.integration_service import InFlightGuard
from ..services.zembra_client import ZembraClient
from ..utils.normalization import utcnow
from .routes import router

# Setup logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("Starting service", service=settings.APP_NAME, version=settings.APP_VERSION,
                environment=settings.ENVIRONMENT)

    try:
        await init_db()
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise

    # Shared across requests: providers keep their HTTP clients, the guard
    # must see every in-flight run
    app.state.registry = create_default_registry()
    app.state.notifier = DownstreamNotifier(settings)
    app.state.guard = InFlightGuard()
    app.state.zembra = ZembraClient(settings)

    yield

    logger.info("Shutting down", service=settings.APP_NAME)
    await app.state.registry.aclose()
    await app.state.notifier.aclose()
    await app.state.zembra.aclose()
    await close_db()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Review ingestion and normalization for Google, Facebook and Yelp",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions"""
    logger.error("Unhandled exception", error=str(exc), path=request.url.path, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred",
            "timestamp": utcnow().isoformat(),
        },
    )


@app.get("/", tags=["General"])
async def root():
    """Root endpoint"""
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "environment": settings.ENVIRONMENT,
    }
