"""
planbill - Billing API.

Serves the billing façades over HTTP for trusted backends, using the plan
cache written by ``planbill bootstrap <environment>``.

Run with:
    uvicorn planbill.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from planbill.api.v1.billing import router as billing_router
from planbill.config import get_settings
from planbill.errors import (
    AmbiguousRemoteStateError,
    BillingError,
    CatalogValidationError,
    PolicyViolation,
    RemoteCallError,
    TooFrequentError,
)
from planbill.logging_config import setup_logging
from planbill.middleware import RequestContextMiddleware
from planbill.payments import Payments

API_TITLE = "planbill"
API_VERSION = "0.1.0"

# Get settings before logging setup so we know the debug flag
settings = get_settings()

setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


def status_code_for(error: BillingError) -> int:
    if isinstance(error, TooFrequentError):
        return 429
    if isinstance(error, PolicyViolation):
        return 400
    if isinstance(error, AmbiguousRemoteStateError):
        return 409
    if isinstance(error, RemoteCallError):
        return 502
    if isinstance(error, CatalogValidationError):
        return 500
    return 400


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", environment=settings.environment)

    _app.state.api_key = settings.api_key or None
    if not settings.api_key:
        logger.warning("api_key_missing", detail="Billing endpoints will return 503")

    payments: Payments | None = None
    stripe_config = settings.stripe_config()
    if stripe_config.secret_key and stripe_config.publishable_key:
        try:
            payments = Payments(
                stripe_config.secret_key,
                stripe_config.publishable_key,
                settings.catalog.cache_path,
                settings.environment,
                config=settings.billing,
                stripe_config=stripe_config,
            )
            logger.info("billing_configured", plans=len(payments.manager.plans))
        except CatalogValidationError as e:
            logger.warning("plan_cache_unavailable", error=e.message)
    else:
        logger.warning("stripe_not_configured", detail="Billing endpoints will return 503")

    _app.state.payments = payments

    yield

    logger.info("api_shutdown")


app = FastAPI(
    title=API_TITLE,
    description="Subscription billing on top of Stripe: plans, line items, subscriptions and usage.",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)


@app.exception_handler(BillingError)
async def billing_error_handler(_request: Request, exc: BillingError) -> JSONResponse:
    status_code = status_code_for(exc)
    logger.warning("billing_request_failed", error=exc.code, status_code=status_code, message=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {"name": API_TITLE, "version": API_VERSION, "docs": "/docs"}


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
