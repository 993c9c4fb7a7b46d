"""
Cron Endpoints

HTTP trigger for the daily billing batch, for deployments that use an
external scheduler instead of the in-process one.
"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from backend.src.billing.services import BillingServices
from backend.src.billing.subscriptions.scheduler import BatchStatus
from .dependencies import CronAuth, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["billing-cron"], dependencies=[CronAuth])


@router.get("/daily")
async def preview_daily_billing(services: BillingServices = Depends(get_services)) -> Dict:
    """Orgs today's batch would touch, without calling the processor."""
    return await services.scheduler.preview()


@router.post("/daily")
async def run_daily_billing(services: BillingServices = Depends(get_services)):
    """
    Run the anniversary refresh and escalation batch.

    Returns 200 on success or partial failure (per-org errors are in the
    body) and 500 when every org failed.
    """
    result = await services.scheduler.run_daily()
    logger.info(f"[CRON] HTTP-triggered batch finished: {result.status.value}")
    status_code = 500 if result.status == BatchStatus.FAILURE else 200
    return JSONResponse(status_code=status_code, content=result.to_dict())
