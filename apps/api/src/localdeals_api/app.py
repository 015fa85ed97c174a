from contextlib import asynccontextmanager

import stripe
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import DBAPIError, OperationalError

from localdeals_api.core.settings import settings
from localdeals_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.errors import ClaimsDomainError
from .workers import DepositEventReplayWorker


APP_VERSION = "0.1.0"

TEMPORARILY_UNAVAILABLE_MESSAGE = (
    "Something went wrong on our side. Please check the coupon status and try again."
)


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    replay_worker = DepositEventReplayWorker(
        session_factory=_session_factory,
        interval_seconds=settings.deposit_replay_interval_seconds,
        batch_size=settings.deposit_replay_batch_size,
        max_attempts=settings.deposit_event_max_attempts,
        received_grace_seconds=settings.deposit_event_received_grace_seconds,
    )
    app.state.deposit_replay_worker = replay_worker

    replay_enabled = settings.deposit_replay_worker_enabled
    if replay_enabled:
        replay_worker.start()
        logger.info(
            "Deposit replay worker enabled",
            interval_seconds=replay_worker.interval_seconds,
            batch_size=settings.deposit_replay_batch_size,
        )
    else:
        logger.info(
            "Deposit replay worker disabled",
            reason="deposit_replay_worker_enabled is false",
        )

    try:
        yield
    finally:
        if replay_enabled and replay_worker.is_running:
            await replay_worker.stop()


async def _domain_error_handler(request: Request, exc: ClaimsDomainError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


async def _storage_error_handler(request: Request, exc: DBAPIError) -> JSONResponse:
    logger.error(
        "Storage failure while handling request",
        path=request.url.path,
        method=request.method,
        error=type(exc).__name__,
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": TEMPORARILY_UNAVAILABLE_MESSAGE, "code": "temporarily_unavailable"},
    )


async def _payment_gateway_error_handler(request: Request, exc: stripe.StripeError) -> JSONResponse:
    logger.error("Payment gateway failure", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "detail": "The payment provider is unavailable. Your claim was saved; please try again.",
            "code": "payment_gateway_unavailable",
        },
    )


def create_app() -> FastAPI:
    """Application factory for the local deals claims service."""
    configure_logging(
        service_name="localdeals-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Local Deals Claims API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="localdeals-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.add_exception_handler(ClaimsDomainError, _domain_error_handler)
    app.add_exception_handler(OperationalError, _storage_error_handler)
    app.add_exception_handler(DBAPIError, _storage_error_handler)
    app.add_exception_handler(stripe.StripeError, _payment_gateway_error_handler)

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
