"""
Billing Endpoints Module

API routes for platform billing.

Routers:
- webhooks: Stripe webhook processing
- cron: Daily batch trigger (CRON_SECRET protected)
- orgs: Payment methods, lifecycle, login gate, overview

Usage:
    from backend.src.billing.endpoints import billing_router

    app.include_router(billing_router, prefix="/api/v1/billing")
"""

from fastapi import APIRouter

from .cron import router as cron_router
from .dependencies import get_services, verify_cron_secret
from .orgs import router as orgs_router
from .webhooks import router as webhooks_router

# Create main billing router
billing_router = APIRouter()

# Include all sub-routers
billing_router.include_router(webhooks_router)
billing_router.include_router(cron_router)
billing_router.include_router(orgs_router)

__all__ = [
    'billing_router',
    'cron_router',
    'orgs_router',
    'webhooks_router',
    'get_services',
    'verify_cron_secret',
]
