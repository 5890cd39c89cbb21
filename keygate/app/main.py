import asyncio
import traceback
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from keygate.app.api.activate import router as activate_router
from keygate.app.api.admin import router as admin_router
from keygate.app.api.dependencies import ActivationServiceDep
from keygate.app.core.config import Settings, settings as default_settings
from keygate.app.core.logging import get_logger, setup_logging
from keygate.app.core.security import SecretsTokenGenerator, TokenGenerator
from keygate.app.exceptions import KeygateException
from keygate.app.middleware.request_id import RequestIdMiddleware
from keygate.app.services.activation import ActivationService
from keygate.app.services.rate_limiter import IssuanceRateLimiter
from keygate.app.services.token_store import TokenStore


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[TokenStore] = None,
    limiter: Optional[IssuanceRateLimiter] = None,
    generator: Optional[TokenGenerator] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use instead of the environment
        store: Key pool to use instead of one at settings.pool_path
        limiter: Rate limiter to use instead of one built from settings
        generator: Key source for a store built here

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or default_settings
    setup_logging()
    logger = get_logger(__name__)

    if store is None:
        store = TokenStore(
            settings.pool_path,
            generator=generator or SecretsTokenGenerator(settings.token_bytes),
            compact_threshold=settings.pool_compact_threshold,
        )
    if limiter is None:
        limiter = IssuanceRateLimiter(
            max_keys=settings.rate_limit_max_keys,
            window_seconds=settings.rate_limit_window_seconds,
            max_entries=settings.rate_limit_max_entries,
        )
    service = ActivationService(
        store, limiter, refund_on_empty=settings.rate_limit_refund_on_empty
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Load the key pool, seed it on first use and run the limiter sweep."""
        first_use = not store.is_initialized
        pool_size = await asyncio.to_thread(store.load)

        if first_use and settings.pool_generate_on_startup and settings.pool_initial_size:
            logger.info(
                "No key pool at %s; generating %d keys",
                store.path,
                settings.pool_initial_size,
            )
            await asyncio.to_thread(store.generate, settings.pool_initial_size)
            pool_size = await asyncio.to_thread(len, store)

        await limiter.start_sweeper(settings.rate_limit_sweep_interval_seconds)

        logger.info(
            "Application startup complete",
            extra={
                "pool_size": pool_size,
                "rate_limit": f"{limiter.max_keys}/{limiter.window_seconds}s",
                "admin_enabled": bool(settings.admin_token),
            },
        )

        yield

        await limiter.stop_sweeper()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="keygate",
        description="Single-use activation key dispenser with per-client rate limiting",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.token_store = store
    app.state.rate_limiter = limiter
    app.state.activation_service = service

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
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
    app.add_middleware(RequestIdMiddleware)

    app.include_router(activate_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health(service: ActivationServiceDep) -> dict[str, Any]:
        """Health check with key pool status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        try:
            stats = await service.stats()
        except KeygateException as e:
            health_status["status"] = "degraded"
            health_status["components"]["token_store"] = {
                "status": "error",
                "error": e.message[:100],
            }
            return health_status

        store_status = "ok" if stats["pool_size"] > 0 else "empty"
        if store_status != "ok":
            health_status["status"] = "degraded"
        health_status["components"]["token_store"] = {
            "status": store_status,
            "pool_size": stats["pool_size"],
        }
        health_status["components"]["rate_limiter"] = {
            "status": "ok",
            "tracked_clients": stats["tracked_clients"],
        }
        return health_status

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
        """Everything outside the routes above ends here."""
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": "Not found"},
        )

    @app.exception_handler(KeygateException)
    async def keygate_exception_handler(request: Request, exc: KeygateException) -> JSONResponse:
        """Handle KeygateException raised outside the activation path."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        The traceback is logged server-side and never sent to the client.
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

        content: dict[str, Any] = {
            "success": False,
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


def run() -> None:
    """Serve the application with uvicorn."""
    import uvicorn

    uvicorn.run(
        "keygate.app.main:app",
        host=default_settings.host,
        port=default_settings.port,
        log_config=None,
    )


# Create the application instance
app = create_app()
