"""
Org Billing Record Domain Entity

Per-organization platform billing state, as read from the billing store.
Mutations are expressed as plain dicts of changed fields and applied by
the store under optimistic concurrency.
"""

from dataclasses import dataclass, fields
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional


class SubscriptionStatus(str, Enum):
    """Platform subscription statuses mirrored from the processor."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

    @classmethod
    def from_processor(cls, value: str) -> 'SubscriptionStatus':
        """
        Map a processor subscription status onto the four local states.

        incomplete/unpaid collapse into past_due, incomplete_expired into
        canceled. Unknown values raise ValueError.
        """
        aliases = {
            'incomplete': cls.PAST_DUE,
            'unpaid': cls.PAST_DUE,
            'incomplete_expired': cls.CANCELED,
            'paused': cls.PAST_DUE,
        }
        if value in aliases:
            return aliases[value]
        return cls(value)


class OrgStatus(str, Enum):
    """Org operability, distinct from subscription status."""
    ACTIVE = "active"
    PAUSED = "paused"
    DEACTIVATED = "deactivated"


class PausedBy(str, Enum):
    SYSTEM = "system"
    ADMIN = "admin"


@dataclass
class OrgSnapshot:
    """The slice of the externally owned org row the billing core reads."""
    org_id: str
    name: str
    status: OrgStatus
    created_at: datetime
    billing_email: Optional[str] = None
    status_reason: Optional[str] = None
    paused_by: Optional[PausedBy] = None

    @property
    def is_operable(self) -> bool:
        return self.status != OrgStatus.DEACTIVATED


@dataclass
class OrgBillingRecord:
    """
    Billing state for one organization.

    Attributes:
        org_id: Organization identity
        anniversary_day: Day of month (1-31) the org is charged; never changes
        trial_end_date: Creation + trial months; never changes
        processor_customer_id: Stripe customer, created lazily once
        processor_subscription_id: Stripe subscription, absent until created
        processor_subscription_item_id: Item carrying the student quantity
        subscription_status: Mirrored processor status
        status_effective_at: Timestamp of the event/response that set the status
        default_payment_method_id: Set only by a user confirmation
        last_billed_student_count: Last quantity reported to the processor
        last_billed_at: When that quantity was reported
        last_billed_period: Anniversary date the report was for
        payment_failure_count: Consecutive failed charges
        last_failure_event_id: Webhook event that last incremented the failure count
        cancel_requested_at: Deactivation asked for a cancel the processor has not confirmed
        version: Optimistic concurrency counter
    """
    org_id: str
    anniversary_day: int
    trial_end_date: datetime
    subscription_status: SubscriptionStatus
    status_effective_at: datetime
    processor_customer_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    processor_subscription_item_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None
    last_billed_student_count: Optional[int] = None
    last_billed_at: Optional[datetime] = None
    last_billed_period: Optional[date] = None
    payment_failure_count: int = 0
    first_payment_failure_at: Optional[datetime] = None
    last_payment_failure_at: Optional[datetime] = None
    payment_retry_count: int = 0
    last_payment_retry_at: Optional[datetime] = None
    final_warning_sent: bool = False
    last_failure_event_id: Optional[str] = None
    cancel_requested_at: Optional[datetime] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def has_subscription(self) -> bool:
        return self.processor_subscription_id is not None

    def is_past_due(self) -> bool:
        return self.subscription_status == SubscriptionStatus.PAST_DUE

    def accepts_status_at(self, timestamp: datetime) -> bool:
        """Last-writer-wins by event time: older observations never overwrite newer ones."""
        return timestamp >= self.status_effective_at

    def diff(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Drop entries of `changes` that already hold the given value."""
        return {k: v for k, v in changes.items() if getattr(self, k) != v}

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, (datetime, date)):
                value = value.isoformat()
            data[f.name] = value
        return data


def escalation_reset() -> Dict[str, Any]:
    """Field values that clear every failed-payment counter."""
    return {
        'payment_failure_count': 0,
        'first_payment_failure_at': None,
        'last_payment_failure_at': None,
        'payment_retry_count': 0,
        'last_payment_retry_at': None,
        'final_warning_sent': False,
    }


def estimate_amount(student_count: Optional[int], price_per_student: int) -> Optional[int]:
    """Display-only amount in minor units. The processor decides what is actually charged."""
    if student_count is None:
        return None
    return student_count * price_per_student
