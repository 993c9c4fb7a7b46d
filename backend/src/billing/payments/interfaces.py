"""
Payment Interfaces

Boundary interface for the payment processor. The billing core only
talks to this; the Stripe gateway is the production implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class SubscriptionResult:
    """Processor view of a subscription right after a write."""
    subscription_id: str
    subscription_item_id: str
    status: str


@dataclass(frozen=True)
class InvoicePaymentResult:
    """Outcome of a charge attempt on an open invoice."""
    paid: bool
    invoice_id: Optional[str] = None
    amount: Optional[int] = None
    decline_code: Optional[str] = None
    message: Optional[str] = None


class PaymentProcessorGateway(ABC):
    """
    Narrow processor interface consumed by the billing core.

    Implementations bound every call with a timeout and a small number of
    retries, and raise TransientGatewayError, ConfigurationError,
    GatewayRequestError or PaymentDeclinedError.
    """

    @abstractmethod
    async def ensure_customer(self, org_id: str, org_name: str, email: Optional[str] = None) -> str:
        """Return the processor customer for `org_id`, creating it at most once."""
        pass

    @abstractmethod
    async def create_subscription(
        self,
        org_id: str,
        customer_id: str,
        quantity: int,
        trial_end: Optional[datetime],
        payment_method_id: str,
        idempotency_scope: str,
    ) -> SubscriptionResult:
        """
        Create the per-student subscription.

        Retries with the same scope, quantity and payment method are
        deduplicated by the processor.
        """
        pass

    @abstractmethod
    async def update_subscription_quantity(
        self,
        subscription_id: str,
        subscription_item_id: str,
        quantity: int,
        idempotency_scope: str,
    ) -> SubscriptionResult:
        """
        Set the subscription item's quantity (sent even when unchanged).

        `idempotency_scope` identifies the billing state the quantity was
        computed from; the same scope and quantity must not reach the
        processor twice for different states.
        """
        pass

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel immediately. Canceling an already canceled subscription is not an error."""
        pass

    @abstractmethod
    async def attach_payment_method(
        self,
        customer_id: str,
        payment_method_id: str,
        subscription_id: Optional[str] = None,
    ) -> None:
        """Attach a confirmed payment method as the customer's (and live subscription's) default."""
        pass

    @abstractmethod
    async def create_setup_intent(self, org_id: str, customer_id: str) -> str:
        """Start a payment-method setup; returns the client secret."""
        pass

    @abstractmethod
    async def pay_open_invoice(
        self,
        customer_id: str,
        subscription_id: Optional[str],
        payment_method_id: Optional[str],
        idempotency_scope: str,
    ) -> Optional[InvoicePaymentResult]:
        """
        Attempt payment of the oldest open invoice.

        Declines are returned as `paid=False`, not raised. Returns None when
        the customer has no open invoice.
        """
        pass

