import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI

from backend.core.conf import settings
from backend.core.log import setup_logging
from backend.core.middleware import billing_exception_handler
from backend.src.billing.endpoints import billing_router
from backend.src.billing.shared.exceptions import BillingError
from backend.src.cron.tasks import shutdown_scheduler, start_scheduler

logger = logging.getLogger(__name__)


health_router = APIRouter()


@health_router.get("/health")
async def health_check():
    return {"status": "ok"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan events."""
    setup_logging()
    if settings.BILLING_CRON_ENABLED:
        start_scheduler()
    else:
        logger.info("In-process billing cron disabled, expecting the HTTP trigger")

    yield

    shutdown_scheduler()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance
    """
    app = FastAPI(
        title=settings.FASTAPI_TITLE,
        description=settings.FASTAPI_DESCRIPTION,
        lifespan=lifespan,
        docs_url=settings.FASTAPI_DOCS_URL,
        redoc_url=settings.FASTAPI_REDOC_URL,
        openapi_url=settings.FASTAPI_OPENAPI_URL,
    )

    # Register exception handlers
    app.exception_handler(BillingError)(billing_exception_handler)

    app.include_router(billing_router, prefix=f"{settings.FASTAPI_API_V1_PATH}/billing")  # /api/v1/billing/*
    app.include_router(health_router)
    return app


app = create_app()
