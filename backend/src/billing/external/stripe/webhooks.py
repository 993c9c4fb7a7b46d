"""
Stripe Webhook Service

Verifies Stripe webhook signatures, turns the raw event into a
ProcessorEvent and hands it to the subscription reconciler.

Response policy towards Stripe:
- 400 for a bad signature or payload (Stripe will not fix it by retrying)
- 503 when the event could not be applied yet (unknown org, processor or
  database contention); Stripe redelivers with backoff
- 200 otherwise, including handler errors that were recorded as failed
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import HTTPException, Request

from backend.core.conf import settings
from backend.src.billing.domain.events import (
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    SETUP_INTENT_SUCCEEDED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    ProcessorEvent,
)
from backend.src.billing.shared.exceptions import (
    ConcurrencyConflictError,
    OrgNotResolvedError,
    TransientGatewayError,
)

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (OrgNotResolvedError, TransientGatewayError, ConcurrencyConflictError)


def _id_of(value: Any) -> Optional[str]:
    """Stripe sends references either as an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get('id')
    return value


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    if invoice.get('subscription'):
        return _id_of(invoice['subscription'])
    details = (invoice.get('parent') or {}).get('subscription_details') or {}
    return _id_of(details.get('subscription'))


def _invoice_metadata(invoice: Dict[str, Any]) -> Dict[str, Any]:
    metadata = dict((invoice.get('subscription_details') or {}).get('metadata') or {})
    details = (invoice.get('parent') or {}).get('subscription_details') or {}
    metadata.update(details.get('metadata') or {})
    metadata.update(invoice.get('metadata') or {})
    return metadata


def parse_event(payload: Dict[str, Any]) -> ProcessorEvent:
    """
    Build a ProcessorEvent from a (verified) Stripe event payload.

    Args:
        payload: Decoded JSON body of the webhook

    Returns:
        ProcessorEvent with the fields the reconciler needs for the type
    """
    obj = payload.get('data', {}).get('object', {}) or {}
    event_type = payload['type']
    event = ProcessorEvent(
        event_id=payload['id'],
        event_type=event_type,
        created_at=ProcessorEvent.timestamp(payload['created']),
        customer_id=_id_of(obj.get('customer')),
        metadata=dict(obj.get('metadata') or {}),
    )

    if event_type in (INVOICE_PAID, INVOICE_PAYMENT_FAILED):
        event.invoice_id = obj.get('id')
        event.subscription_id = _invoice_subscription(obj)
        event.currency = obj.get('currency')
        event.attempt_count = obj.get('attempt_count')
        event.metadata = _invoice_metadata(obj)
        if event_type == INVOICE_PAID:
            event.amount = obj.get('amount_paid')
        else:
            event.amount = obj.get('amount_due')

    elif event_type in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
        event.subscription_id = obj.get('id')
        event.subscription_status = obj.get('status')
        event.currency = obj.get('currency')
        items = (obj.get('items') or {}).get('data') or []
        if items:
            event.subscription_item_id = items[0].get('id')

    elif event_type == SETUP_INTENT_SUCCEEDED:
        event.payment_method_id = _id_of(obj.get('payment_method'))

    return event


class WebhookService:
    """
    Entry point for Stripe webhooks.

    Usage:
        webhook_service = WebhookService(reconciler)
        result = await webhook_service.process_stripe_webhook(request)
    """

    def __init__(self, reconciler, webhook_secret: Optional[str] = None, tolerance: Optional[int] = None):
        self.reconciler = reconciler
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance or settings.STRIPE_WEBHOOK_TOLERANCE

    def verify(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Check the Stripe-Signature header and decode the body.

        Raises:
            HTTPException: 400 for a missing/invalid signature or payload,
                500 if the webhook secret is not configured
        """
        if not self.webhook_secret:
            logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET not configured")
            raise HTTPException(status_code=500, detail="Webhook secret not configured")
        if not sig_header:
            raise HTTPException(status_code=400, detail="Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[WEBHOOK] Invalid signature: {e}")
            raise HTTPException(status_code=400, detail="Invalid webhook signature")
        except ValueError as e:
            logger.warning(f"[WEBHOOK] Invalid payload: {e}")
            raise HTTPException(status_code=400, detail="Invalid payload")

        return json.loads(payload)

    async def process_stripe_webhook(self, request: Request) -> Dict[str, Any]:
        """
        Process an incoming Stripe webhook.

        Args:
            request: FastAPI Request object

        Returns:
            Dict with processing status

        Raises:
            HTTPException: 400/500 per `verify`, 503 when Stripe should redeliver
        """
        payload = await request.body()
        data = self.verify(payload, request.headers.get('stripe-signature'))

        try:
            event = parse_event(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[WEBHOOK] Malformed event: {e}")
            raise HTTPException(status_code=400, detail="Malformed event")

        try:
            result = await self.reconciler.process(event)
        except RETRYABLE_ERRORS as e:
            logger.warning(f"[WEBHOOK] Event {event.event_id} deferred for redelivery: {e.message}")
            raise HTTPException(status_code=503, detail=e.to_dict())
        except Exception as e:
            logger.error(f"[WEBHOOK] Error processing webhook {event.event_id}: {e}", exc_info=True)
            # Recorded as failed; acknowledge so Stripe does not retry indefinitely
            return {
                'status': 'success',
                'event_id': event.event_id,
                'error': 'processed_with_errors',
                'message': 'Webhook logged as failed internally',
            }

        body = result.to_dict()
        body['outcome'] = body.pop('status')
        return {'status': 'success', **body}
