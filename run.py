"""
Main entry point for running the application
"""
import uvicorn

from review_ingestion.core.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "review_ingestion.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        workers=settings.WORKERS,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
