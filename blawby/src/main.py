"""
Blawby - practice platform webhook and event service.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from src.config import get_settings
from src.api.router import api_router
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("blawby")


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
    logger.info("Blawby starting up (env=%s)", settings.app_env)

    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set - /webhooks/stripe will reject deliveries")
    if not settings.stripe_connect_webhook_secret:
        logger.warning(
            "STRIPE_CONNECT_WEBHOOK_SECRET not set - /webhooks/stripe-connect will reject deliveries"
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

    # Handler registry: built once, read-only afterwards
    from src.services.event_handlers import build_event_registry
    app.state.event_registry = build_event_registry()

    worker_tasks: list[asyncio.Task] = []
    stop = asyncio.Event()

    # Single-container deploys run the job consumers inside the API process
    if settings.run_workers_in_process:
        from src.workers.job_worker import run_worker_process
        worker_tasks.append(
            asyncio.create_task(run_worker_process(app.state.event_registry, stop))
        )
        logger.info("In-process job workers started")
    else:
        logger.info("Job workers run separately (python -m src.workers.job_worker)")

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("Blawby shutting down - stopping %d workers...", len(worker_tasks))
    stop.set()
    if worker_tasks:
        # Wait up to 10 seconds for workers to finish
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from src.database import dispose_engine
    from src.utils.redis_client import close_redis
    await close_redis()
    await dispose_engine()
    logger.info("Blawby shutdown complete")


def _cors_origins(settings) -> list[str]:
    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    if settings.app_env == "development":
        origins.extend(["http://localhost:3000", "http://localhost:5173"])
    origins.append(settings.app_base_url)
    return list(dict.fromkeys(origins))


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level, service="blawby-api")

    application = FastAPI(
        title="Blawby",
        description="Practice platform webhook ingestion and event processing",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    # Include all routes
    application.include_router(api_router)

    return application


app = create_app()
