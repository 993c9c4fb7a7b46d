"""
Webhook Endpoints

Stripe webhook endpoint for platform billing events.
"""

import logging

from fastapi import APIRouter, Depends, Request

from backend.src.billing.external.stripe.webhooks import WebhookService
from backend.src.billing.services import BillingServices
from .dependencies import get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing-webhooks"])


@router.post("/webhook")
async def stripe_webhook(request: Request, services: BillingServices = Depends(get_services)):
    """
    Process Stripe webhook events.

    Handles:
    - invoice.paid
    - invoice.payment_failed
    - customer.subscription.updated
    - customer.subscription.deleted
    - setup_intent.succeeded
    """
    return await WebhookService(services.reconciler).process_stripe_webhook(request)
