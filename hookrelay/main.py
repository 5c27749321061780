"""
HookRelay - webhook ingestion, routing and forwarding service.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from hookrelay.config import get_settings
from hookrelay.api.receiver import IngestionRejected, ingestion_rejected_handler
from hookrelay.api.router import api_router
from hookrelay.database import dispose_engine
from hookrelay.services.task_dispatch import get_task_pool
from hookrelay.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("hookrelay")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("HookRelay starting up (env=%s)", settings.app_env)

    if not settings.jwt_secret:
        logger.warning(
            "JWT_SECRET not set - the management API will reject every request."
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []

    if settings.retention_sweeper_enabled:
        from hookrelay.workers.retention_sweeper import run_retention_sweeper
        worker_tasks.append(asyncio.create_task(run_retention_sweeper()))
        logger.info("Retention sweeper started")
    else:
        logger.info("Retention sweeper disabled (RETENTION_SWEEPER_ENABLED=false)")

    yield

    logger.info("HookRelay shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)

    # Let in-flight forwards and notifications finish before the engine goes away
    cancelled = await get_task_pool().drain(settings.background_shutdown_timeout_seconds)
    if cancelled:
        logger.warning("Cancelled %d background tasks still running at shutdown", cancelled)

    await dispose_engine()
    logger.info("HookRelay shutdown complete")


def _cors_origins(settings) -> list[str]:
    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    if settings.app_env == "development":
        origins.extend(["http://localhost:3000", "http://localhost:5173"])
    origins.append(settings.app_base_url)
    return origins


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="HookRelay",
        description="Webhook ingestion, routing and forwarding",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.add_exception_handler(IngestionRejected, ingestion_rejected_handler)
    application.include_router(api_router)

    return application


app = create_app()
