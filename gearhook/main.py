"""
gearhook - inbound bot webhooks and the incoming-gear workflow.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from gearhook.config import get_settings
from gearhook.api.exceptions import register_exception_handlers
from gearhook.api.router import api_router
from gearhook.services.handlers import get_default_registry
from gearhook.services.mailer import build_mailer
from gearhook.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("gearhook")


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
    logger.info("gearhook starting up (env=%s)", settings.app_env)

    if not settings.admin_jwt_secret:
        logger.warning("ADMIN_JWT_SECRET not set - admin and staff endpoints will reject every request")
    if not settings.sendgrid_api_key:
        logger.warning("SENDGRID_API_KEY not set - customer emails will not be sent")

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

    if settings.workers_enabled:
        from gearhook.workers.stale_event_sweeper import run_stale_event_sweeper
        from gearhook.workers.delayed_job_runner import run_delayed_job_runner

        worker_tasks.append(asyncio.create_task(run_stale_event_sweeper(app.state.mailer)))
        worker_tasks.append(asyncio.create_task(run_delayed_job_runner(app.state.mailer)))
        logger.info("Background workers started (stale_event_sweeper, delayed_job_runner)")
    else:
        logger.info("Background workers disabled (WORKERS_ENABLED=false)")

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("gearhook shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)

    from gearhook.database import dispose_engine
    from gearhook.utils.redis_client import close_redis
    await dispose_engine()
    await close_redis()
    logger.info("gearhook shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="gearhook",
        description="Inbound bot webhooks with exactly-once processing and operator replay",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Collaborators shared by request handlers and workers
    application.state.mailer = build_mailer(settings)
    application.state.handler_registry = get_default_registry()

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    register_exception_handlers(application)
    application.include_router(api_router)

    return application


app = create_app()
