"""
Endpoint Dependencies

Shared dependencies for billing API endpoints. Tests override
`get_services` through `app.dependency_overrides`.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException

from backend.core.conf import settings
from backend.src.billing.services import BillingServices, get_billing_services

logger = logging.getLogger(__name__)


def get_services() -> BillingServices:
    return get_billing_services()


async def verify_cron_secret(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> None:
    """
    Guard for the cron trigger: `Authorization: Bearer <CRON_SECRET>`.

    An unset CRON_SECRET disables the HTTP trigger entirely.
    """
    if not settings.CRON_SECRET:
        logger.error("[CRON] CRON_SECRET not configured, refusing HTTP trigger")
        raise HTTPException(status_code=500, detail="Cron trigger not configured")
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing authorization header")

    token = authorization[7:]
    if not hmac.compare_digest(token.encode(), settings.CRON_SECRET.encode()):
        logger.warning("[CRON] Rejected cron trigger with invalid secret")
        raise HTTPException(status_code=401, detail="Invalid cron secret")


CronAuth = Depends(verify_cron_secret)
