"""
Scheduled tasks for the daily platform billing batch.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from backend.core.conf import settings

logger = logging.getLogger(__name__)

# Initialize the scheduler
scheduler = AsyncIOScheduler(timezone=settings.BILLING_CRON_TIMEZONE)

BILLING_JOB_ID = "platform_billing_daily"


async def run_daily_billing():
    """
    Run the anniversary refresh and escalation batch.
    Per-org failures are collected in the batch result.
    """
    from backend.src.billing.services import get_billing_services

    try:
        result = await get_billing_services().scheduler.run_daily()
        logger.info(f"[CRON] Daily billing finished: {result.status.value} "
                    f"({len(result.items)} org step(s), {len(result.failed)} failed)")
    except Exception as e:
        logger.error(f"[CRON] Daily billing run failed: {e}", exc_info=True)
        # Don't re-raise - we want the scheduler to continue running


def start_scheduler():
    """
    Start the scheduler and add the billing job.
    The batch runs once a day at BILLING_CRON_HOUR:BILLING_CRON_MINUTE.
    """
    try:
        scheduler.add_job(
            run_daily_billing,
            trigger=CronTrigger(
                hour=settings.BILLING_CRON_HOUR,
                minute=settings.BILLING_CRON_MINUTE,
                timezone=settings.BILLING_CRON_TIMEZONE,
            ),
            id=BILLING_JOB_ID,
            name="Daily platform billing (anniversary refresh and escalation)",
            replace_existing=True,
            max_instances=1,  # Ensure only one instance runs at a time
            coalesce=True,
        )

        scheduler.start()
        logger.info(
            f"Scheduler started successfully. Billing runs daily at "
            f"{settings.BILLING_CRON_HOUR:02d}:{settings.BILLING_CRON_MINUTE:02d} {settings.BILLING_CRON_TIMEZONE}."
        )

    except Exception as e:
        logger.error(f"Error starting scheduler: {e}", exc_info=True)
        raise


def shutdown_scheduler():
    """
    Shutdown the scheduler gracefully.
    """
    try:
        if scheduler.running:
            scheduler.shutdown(wait=True)
            logger.info("Scheduler shutdown successfully")
    except Exception as e:
        logger.error(f"Error shutting down scheduler: {e}", exc_info=True)
