"""
LeadFlow - automated lead conversation engine.
FastAPI entry point: HTTP surface plus the engine's background workers.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from leadflow.config import get_settings
from leadflow.api.router import api_router
from leadflow.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("leadflow")

WORKER_SHUTDOWN_SECONDS = 10.0


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Propagates X-Correlation-ID (or a fresh one) into the log context and the response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def _init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, traces_sample_rate=0.1, environment=settings.app_env)
        logger.info("Sentry initialized")
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))


async def _stop_workers(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=WORKER_SHUTDOWN_SECONDS)
    if pending:
        logger.warning("%d worker(s) did not stop in time", len(pending))
        await asyncio.gather(*pending, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from leadflow.database import dispose_engine
    from leadflow.services.engine import get_engine
    from leadflow.workers.automation_runner import start_engine_workers

    settings = get_settings()
    logger.info("LeadFlow starting (env=%s)", settings.app_env)
    if settings.app_env == "production" and settings.allow_unsigned_webhooks:
        logger.warning(
            "ALLOW_UNSIGNED_WEBHOOKS is set in production - "
            "provider callbacks are accepted without signature verification."
        )
    _init_sentry(settings)

    engine = get_engine()
    workers = start_engine_workers(engine)

    yield

    logger.info("LeadFlow stopping %d worker(s)", len(workers))
    await _stop_workers(workers)
    # Steps already handed to transports finish and are ledgered
    await engine.scheduler.wait_idle()
    await dispose_engine()
    logger.info("LeadFlow shutdown complete")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="LeadFlow",
        description="Automated lead conversations over WhatsApp, SMS and email",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173", settings.app_base_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept", "Origin"],
    )
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
