import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from backend.src.billing.shared.exceptions import BillingError

logger = logging.getLogger(__name__)


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Exception handler for BillingError.

    Args:
    ----
        request (Request): The incoming request that triggered the exception.
        exc (BillingError): The exception object that was raised.

    Returns:
    -------
        JSONResponse: The error's `to_dict()` body with the status code of its class.

    """
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
