"""
Bankfeed - Main Application Entry Point

Bank account aggregation: Bridge connections, transaction import and
conversion into the personal ledger.
"""

import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.scheduler import start_scheduler

logger = logging.getLogger(__name__)

# Import module routers
from app.modules.banking.router import router as banking_router
from app.modules.ledger.router import router as ledger_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Bank account aggregation and transaction import",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Use ["*"] if CORS_ALLOW_ALL is True (development), otherwise use explicit origins
    cors_origins = ["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register module routers
    app.include_router(banking_router, prefix="/api/v1/banking", tags=["Banking"])
    app.include_router(ledger_router, prefix="/api/v1/ledger", tags=["Ledger"])

    @app.get("/", tags=["Health"])
    async def root():
        """Root endpoint - health check."""
        return {
            "application": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/api/health", tags=["Health"])
    async def health_check():
        """API health check endpoint."""
        return {"status": "healthy"}

    @app.get("/api/cache/stats", tags=["Health"])
    async def cache_stats():
        """Get cache statistics for debugging."""
        from app.core.cache import get_cache_stats
        return get_cache_stats()

    @app.post("/api/cache/clear", tags=["Health"])
    async def clear_cache(prefix: str = None):
        """Clear cache entries. Optionally filter by prefix."""
        from app.core.cache import clear_cache
        count = clear_cache(prefix)
        return {"cleared": count, "prefix": prefix}

    @app.on_event("startup")
    async def startup_event():
        """Start the periodic bank sync scheduler."""
        if not settings.BANKING_AUTO_SYNC_ENABLED:
            logger.info("Automatic bank sync disabled")
            return
        try:
            start_scheduler()
            logger.info("Bank sync scheduler started")
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}", exc_info=True)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop background scheduler on app shutdown."""
        from app.core.scheduler import stop_scheduler
        try:
            stop_scheduler()
            logger.info("Application shutdown - scheduler stopped")
        except Exception as e:
            logger.error(f"Error stopping scheduler: {e}")

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
