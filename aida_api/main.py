"""AIDA Engine API Service.

FastAPI application exposing the context & retrieval engine. Long-lived
resources (Redis client, provider clients, the coordinator) are created in the
lifespan handler and shared through ``app.state``.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from aida_api.models import HealthResponse
from aida_api.orchestrators.request_coordinator import RequestCoordinator, build_request_coordinator
from aida_api.routers import responses as responses_router
from aida_libs.caching.redis_client import close_redis_client, create_redis_client, health_check
from aida_libs.common.logging_config import configure_logging
from aida_libs.common.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

SERVICE_NAME = "aida-engine"
SERVICE_VERSION = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    coordinator: Optional[RequestCoordinator] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings override, defaults to environment settings
        coordinator: Pre-built coordinator; when given, startup skips Redis and
            provider wiring

    Returns:
        Configured application
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        app.state.redis = None
        app.state.coordinator = coordinator
        if coordinator is None:
            app.state.redis = await create_redis_client(settings.redis_url)
            app.state.coordinator = build_request_coordinator(settings, app.state.redis)
        logger.info(
            "Engine started",
            env=settings.app_env,
            redis_enabled=app.state.redis is not None,
            fusion_algorithm=settings.fusion_algorithm,
        )
        try:
            yield
        finally:
            await app.state.coordinator.aclose()
            await close_redis_client(app.state.redis)
            logger.info("Engine stopped")

    app = FastAPI(
        title="AIDA Context & Retrieval Engine",
        description="Context-aware reply generation for business assistants",
        version=SERVICE_VERSION,
        default_response_class=ORJSONResponse,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings

    cors_origins = ["*"] if settings.is_development else settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=not settings.is_development,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing and structured data."""
        start_time = time.time()
        request_id = request.headers.get("x-request-id") or f"req_{int(start_time * 1000000)}"
        request.state.request_id = request_id

        logger.info(
            "Request started",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                request_id=request_id,
                error=str(e),
                process_time_ms=round((time.time() - start_time) * 1000, 2),
                exc_info=True,
            )
            raise

        logger.info(
            "Request completed",
            request_id=request_id,
            status_code=response.status_code,
            process_time_ms=round((time.time() - start_time) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(responses_router.router, tags=["Responses"])

    @app.get("/healthz", response_model=HealthResponse, tags=["Health"])
    async def liveness() -> HealthResponse:
        """Health check endpoint for liveness probes.

        Example:
            ```bash
            curl http://localhost:8000/healthz
            ```
        """
        return HealthResponse(
            status="healthy",
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            timestamp=time.time(),
        )

    @app.get("/readyz", response_model=HealthResponse, tags=["Health"])
    async def readiness(request: Request) -> ORJSONResponse:
        """Readiness check: engine wired and Redis reachable when configured."""
        state = request.app.state
        redis_configured = bool(settings.redis_url)
        redis_ok = await health_check(getattr(state, "redis", None)) if redis_configured else None
        ready = getattr(state, "coordinator", None) is not None and redis_ok is not False

        body = HealthResponse(
            status="ready" if ready else "not_ready",
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            timestamp=time.time(),
            details={"redis": redis_ok, "coordinator": getattr(state, "coordinator", None) is not None},
        )
        return ORJSONResponse(status_code=200 if ready else 503, content=body.model_dump())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # For local development only
    uvicorn.run(
        "aida_api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
