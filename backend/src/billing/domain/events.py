"""
Processor Event

Processor-agnostic view of an inbound payment webhook. Built from a
verified Stripe event in external/stripe/webhooks.py and consumed by the
subscription reconciler.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


INVOICE_PAID = 'invoice.paid'
INVOICE_PAYMENT_FAILED = 'invoice.payment_failed'
SUBSCRIPTION_UPDATED = 'customer.subscription.updated'
SUBSCRIPTION_DELETED = 'customer.subscription.deleted'
SETUP_INTENT_SUCCEEDED = 'setup_intent.succeeded'

HANDLED_EVENT_TYPES = frozenset({
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    SETUP_INTENT_SUCCEEDED,
})


@dataclass
class ProcessorEvent:
    """
    One inbound processor event.

    Attributes:
        event_id: Processor event id, the deduplication key
        event_type: e.g. 'invoice.paid'
        created_at: Processor-side event time, orders status writes
        customer_id: Processor customer id, if any
        subscription_id: Processor subscription id, if any
        subscription_item_id: First subscription item (subscription events)
        amount: Invoice amount in minor units (paid or due)
        currency: ISO currency code
        subscription_status: Raw processor status (subscription events)
        payment_method_id: Confirmed payment method (setup intent events)
        attempt_count: Processor's own invoice attempt counter
        metadata: Object metadata, carries org_id for our own objects
    """
    event_id: str
    event_type: str
    created_at: datetime
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_item_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    subscription_status: Optional[str] = None
    payment_method_id: Optional[str] = None
    invoice_id: Optional[str] = None
    attempt_count: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def org_id_hint(self) -> Optional[str]:
        return self.metadata.get('org_id')

    @staticmethod
    def timestamp(epoch_seconds: int) -> datetime:
        return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
