import traceback
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vibestudy.app.api.progress import router as progress_router
from vibestudy.app.core.config import settings
from vibestudy.app.core.http_client import init_http_client
from vibestudy.app.core.logging import get_logger, setup_logging
from vibestudy.app.exceptions import RateLimitExceededError, VibeStudyException
from vibestudy.app.middleware.rate_limit import (
    RateLimitMiddleware,
    RedisCounterStore,
    get_rate_limiter,
)
from vibestudy.app.middleware.request_id import RequestIdMiddleware
from vibestudy.app.services.progress_sync import get_sync_manager, reset_sync_manager

# Pending sync writes get this long to finish on shutdown
SHUTDOWN_FLUSH_TIMEOUT_SECONDS = 10.0


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[dict, None]:
        """Set up the shared HTTP client and the sync manager; flush on shutdown."""
        async with init_http_client() as http_client:
            manager = get_sync_manager()
            await manager.store.initialize()

            logger.info(
                "Application startup complete",
                extra={
                    "progress_store": type(manager.store).__name__,
                    "rate_limit_store": type(get_rate_limiter().store).__name__,
                    "debug_mode": settings.debug,
                },
            )

            yield {"http_client": http_client}

            # Drain writes while the HTTP client is still open
            await manager.shutdown(timeout=SHUTDOWN_FLUSH_TIMEOUT_SECONDS)
            await manager.store.close()

        await get_rate_limiter().close()
        reset_sync_manager()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="VibeStudy Sync",
        description="Learner progress sync with per-caller rate limiting",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RateLimitMiddleware, route_limited_prefixes=(progress_router.prefix,))
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=600,
    )

    app.include_router(progress_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with progress store, rate limit store and sync queue status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        manager = get_sync_manager()

        try:
            store_ok = await manager.store.health_check()
        except Exception as e:
            store_ok = False
            logger.warning(f"Progress store health check failed: {e}")
        if not store_ok:
            health_status["status"] = "degraded"
        health_status["components"]["progress_store"] = {
            "status": "ok" if store_ok else "error",
            "type": type(manager.store).__name__,
        }

        counter_store = get_rate_limiter().store
        health_status["components"]["rate_limit"] = {
            "status": "ok",
            "type": "redis" if isinstance(counter_store, RedisCounterStore) else "memory",
        }

        dead_letters = await manager.dead_letter_queue.size()
        health_status["components"]["sync"] = {
            "status": "ok" if not dead_letters else "degraded",
            "pending": manager.pending_count(),
            "dead_letters": dead_letters,
        }
        return health_status

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return JSONResponse(
            status_code=exc.status_code, content=exc.to_response(), headers=exc.headers
        )

    @app.exception_handler(VibeStudyException)
    async def service_error_handler(request: Request, exc: VibeStudyException) -> JSONResponse:
        """Map service exceptions to their HTTP status."""
        if exc.status_code >= 500:
            logger.warning(
                f"{type(exc).__name__}: {exc.message}",
                extra={"request_id": getattr(request.state, "request_id", None)},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; it is logged server-side.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "traceback": traceback.format_exc(),
            },
        )
        content = {
            "error": "internal_error",
            "message": str(exc) if settings.debug else "Internal server error",
            "request_id": request_id,
        }
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
