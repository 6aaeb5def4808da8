from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from domain_watch.api.router import api_router
from domain_watch.core.config import Settings, get_settings
from domain_watch.core.telemetry import setup_telemetry, shutdown_telemetry
from domain_watch.services.background import get_task_pool
from domain_watch.services.monitor import get_monitor
from domain_watch.services.repository import get_repository
from domain_watch.services.webhooks import get_webhook_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    deliveries = get_task_pool()
    deliveries.reopen()
    webhook_client = get_webhook_client()
    try:
        yield
    finally:
        grace = get_settings().shutdown_grace_seconds
        cancelled = await deliveries.drain(timeout=grace)
        if cancelled:
            logger.warning("shutdown cancelled %s webhook tasks still running after %.0fs", cancelled, grace)
        runtime = getattr(application.state, "telemetry", None)
        if runtime is not None:
            shutdown_telemetry(application, runtime)
            application.state.telemetry = None
        # Drained deliveries no longer need the webhook client or the database pool.
        await webhook_client.aclose()
        get_webhook_client.cache_clear()
        get_monitor.cache_clear()
        await get_repository().close()
        get_repository.cache_clear()


async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.state.telemetry = setup_telemetry(application, settings)
    application.middleware("http")(log_requests)
    application.include_router(api_router)
    return application


app = create_app()
