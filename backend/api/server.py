# api/server.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — FASTAPI SERVER
# ============================================================================
# Webhook intake, manual sync, health and metrics endpoints
# ============================================================================

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from api.dependencies import ServiceContainer, build_container, get_container
from api.middleware import RateLimitMiddleware
from pipeline.errors import BreakerOpenError, SyncError, ValidationError
from services.log_setup import configure_logging
from settings import RateLimitConfig, ServerConfig, Settings

logger = structlog.get_logger(component="server")

WEBHOOK_PROVIDERS = {"shiprocket"}


# ============================================================================
# REQUEST MODELS
# ============================================================================

class ManualSyncRequest(BaseModel):
    """Body of POST /api/sync/manual. Values are validated by the orchestrator."""
    model_config = ConfigDict(populate_by_name=True)

    start_date: Optional[str] = Field(default=None, alias="startDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")
    sync_type: str = Field(default="all", alias="syncType")


# ============================================================================
# ERROR MAPPING
# ============================================================================

def error_response(error: SyncError) -> JSONResponse:
    if isinstance(error, ValidationError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": str(error), "details": error.details},
        )

    if isinstance(error, BreakerOpenError):
        return JSONResponse(
            status_code=503,
            content={
                "success": False,
                "error": "Dependency temporarily unavailable",
                "message": str(error),
                "retry_after": error.retry_after,
            },
        )

    return JSONResponse(
        status_code=502,
        content={"success": False, "error": type(error).__name__, "message": str(error)},
    )


async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    logger.error("request_failed", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
    return error_response(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "invalid")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request", "details": details})


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the FastAPI app. A prebuilt container skips settings/env wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        if app.state.container is None:
            settings = Settings.from_env()
            configure_logging(settings.log_level, env=settings.env)
            app.state.container = build_container(settings)
        else:
            settings = app.state.container.settings
            configure_logging(settings.log_level, env=settings.env)

        services: ServiceContainer = app.state.container

        if settings.is_production:
            settings.validate()

        logger.info("server_starting", version=ServerConfig.VERSION, env=settings.env)
        await services.start()

        yield

        logger.info("server_shutting_down")
        await services.aclose()

    app = FastAPI(
        title="Shiprocket → Triple Whale Integration",
        description="Syncs Shiprocket shipping events into Triple Whale custom metrics",
        version=ServerConfig.VERSION,
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.started_at = datetime.utcnow()
    app.state.start_time = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ServerConfig.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    rate_limit = container.settings.rate_limit if container is not None else RateLimitConfig.from_env()
    app.add_middleware(RateLimitMiddleware, config=rate_limit)

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request id headers."""
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(SyncError, sync_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    register_routes(app)
    return app


def _uptime(request: Request) -> float:
    return round(time.monotonic() - request.app.state.start_time, 3)


# ============================================================================
# ENDPOINTS
# ============================================================================

def register_routes(app: FastAPI) -> None:

    @app.post("/webhooks/{provider}")
    async def receive_webhook(provider: str, request: Request, services: ServiceContainer = Depends(get_container)):
        """
        Webhook intake.

        401 on a bad signature, 400 on a malformed payload, otherwise 200
        even when delivery to Triple Whale failed.
        """
        if provider not in WEBHOOK_PROVIDERS:
            return JSONResponse(status_code=404, content={"error": f"Unknown webhook provider: {provider}"})

        raw_body = await request.body()
        signature = request.headers.get("X-Shiprocket-Signature") or request.headers.get("Authorization")

        ack = await services.orchestrator.handle_webhook(raw_body, signature)
        return JSONResponse(status_code=ack.status_code, content=ack.body())

    @app.get("/webhooks/shiprocket/health")
    async def webhook_health():
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "service": "shiprocket-webhook-handler",
        }

    @app.get("/health")
    async def health_check(request: Request, services: ServiceContainer = Depends(get_container)):
        """Aggregate health of both platforms. 503 when any is unhealthy."""
        shiprocket, triple_whale = await asyncio.gather(
            services.shiprocket.health_check(),
            services.triple_whale.health_check(),
        )
        healthy = all(r.get("status") == "healthy" for r in (shiprocket, triple_whale))

        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "timestamp": datetime.utcnow().isoformat(),
                "version": ServerConfig.VERSION,
                "uptime_seconds": _uptime(request),
                "services": {"shiprocket": shiprocket, "triple_whale": triple_whale},
            },
        )

    @app.get("/metrics")
    async def metrics(request: Request, services: ServiceContainer = Depends(get_container)):
        breakers: Dict[str, Any] = {}
        for name, client in (("shiprocket", services.shiprocket), ("triple_whale", services.triple_whale)):
            breaker = getattr(client, "breaker", None)
            if breaker is not None:
                breakers[name] = breaker.snapshot().model_dump(mode="json")

        return {
            "timestamp": datetime.utcnow().isoformat(),
            "uptime_seconds": _uptime(request),
            "counters": services.collector.snapshot(),
            "circuit_breakers": breakers,
        }

    @app.post("/api/sync/manual")
    async def manual_sync(body: ManualSyncRequest, services: ServiceContainer = Depends(get_container)):
        """Batch sync a date range. Taxonomy errors map to 400/502/503."""
        logger.info("manual_sync_requested", sync_type=body.sync_type, start_date=body.start_date, end_date=body.end_date)
        report = await services.orchestrator.sync_range(body.start_date, body.end_date, body.sync_type)
        return {
            "success": True,
            "message": "Manual sync completed",
            "result": report.model_dump(),
        }

    @app.get("/api/test-connections")
    async def test_connections(services: ServiceContainer = Depends(get_container)):
        results: Dict[str, Any] = {}

        shiprocket = await services.shiprocket.health_check()
        results["shiprocket"] = {
            "status": "connected" if shiprocket.get("status") == "healthy" else "failed",
            "error": shiprocket.get("error"),
            "timestamp": datetime.utcnow().isoformat(),
        }

        valid = await services.triple_whale.validate_api_key()
        results["triple_whale"] = {
            "status": "connected" if valid else "failed",
            "timestamp": datetime.utcnow().isoformat(),
        }

        return {
            "success": all(r["status"] == "connected" for r in results.values()),
            "results": results,
        }


# ============================================================================
# MAIN
# ============================================================================

app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=ServerConfig.HOST,
        port=ServerConfig.PORT,
        reload=ServerConfig.DEBUG,
        log_level=ServerConfig.LOG_LEVEL.lower(),
    )
