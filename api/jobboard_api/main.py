"""Job board API: paid postings, Stripe checkout and the expiration job queue."""

from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from starlette.requests import Request

from jobboard_api.api.router import api_router
from jobboard_api.core.config import Settings, get_settings
from jobboard_api.core.pricing import list_tiers
from jobboard_api.core.telemetry import TelemetryRuntime, setup_api_telemetry, shutdown_api_telemetry
from jobboard_api.services.repository import RepositoryUnavailableError, get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


def missing_integrations(config: Settings) -> list[str]:
    """Settings whose absence disables part of the posting flow."""
    required = {
        "JB_DATABASE_URL": config.database_url,
        "JB_STRIPE_SECRET_KEY": config.stripe_secret_key,
        "JB_STRIPE_WEBHOOK_SECRET": config.stripe_webhook_secret,
        "JB_SUPABASE_URL": config.supabase_url,
        "JB_SUPABASE_ANON_KEY": config.supabase_anon_key,
    }
    return [name for name, value in required.items() if not value]


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(
        "api starting service=%s environment=%s currency=%s tiers=%s",
        settings.app_name,
        settings.environment,
        settings.payment_currency,
        ",".join(f"{tier.days}d:{tier.price}" for tier in list_tiers()),
    )
    missing = missing_integrations(settings)
    if missing:
        logger.warning("api started without %s; dependent endpoints answer 503", ", ".join(missing))
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()


app = FastAPI(
    title=settings.app_name,
    description="Paid job postings with timed expiration",
    version="0.1.0",
    lifespan=lifespan,
)
_telemetry_runtime = setup_api_telemetry(app, settings)


async def _repository_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("database unavailable method=%s path=%s error=%s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


app.add_exception_handler(RepositoryUnavailableError, _repository_unavailable_handler)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
