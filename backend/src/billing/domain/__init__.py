"""Domain entities for billing module."""

from .billing_record import (
    OrgBillingRecord,
    OrgSnapshot,
    OrgStatus,
    PausedBy,
    SubscriptionStatus,
    escalation_reset,
    estimate_amount,
)
from .events import HANDLED_EVENT_TYPES, ProcessorEvent

__all__ = [
    'OrgBillingRecord',
    'OrgSnapshot',
    'OrgStatus',
    'PausedBy',
    'SubscriptionStatus',
    'escalation_reset',
    'estimate_amount',
    'HANDLED_EVENT_TYPES',
    'ProcessorEvent',
]
