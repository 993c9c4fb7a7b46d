"""
Stripe Idempotency Key Generation

Deterministic idempotency keys for Stripe writes. A key depends only on
the operation and its business inputs (org, customer, billing period,
quantity, payment method), never on wall-clock time, so a retried or
resumed batch sends exactly the same key as the run it repeats, while a
request with a different body never replays an earlier response.
"""

import hashlib


class StripeIdempotencyManager:
    """
    Generates deterministic idempotency keys for Stripe operations.

    Keys are:
    - Unique per operation + subject + parameters
    - Identical across retries, restarts and duplicate scheduler ticks
    - Different when the request body would differ (Stripe rejects reuse
      of a key with different parameters)

    Usage:
        key = stripe_idempotency_manager.subscription_key(org_id, customer_id, '2025-03-15', 12, 'pm_123')
        await stripe.Subscription.create_async(idempotency_key=key, ...)
    """

    def generate_key(self, operation: str, subject: str, *args, **kwargs) -> str:
        """
        Generate an idempotency key.

        Args:
            operation: Operation type (e.g. 'customer', 'subscription')
            subject: Org, customer or subscription identifier
            *args: Additional positional components
            **kwargs: Additional keyword components (order-independent)

        Returns:
            40-character hex idempotency key
        """
        components = [
            operation,
            subject,
            *[str(arg) for arg in args],
            *[f"{k}={v}" for k, v in sorted(kwargs.items())],
        ]
        return hashlib.sha256("_".join(components).encode()).hexdigest()[:40]

    def customer_key(self, org_id: str) -> str:
        return self.generate_key('customer', org_id)

    def subscription_key(
        self,
        org_id: str,
        customer_id: str,
        scope: str,
        quantity: int,
        payment_method_id: str,
    ) -> str:
        return self.generate_key(
            'subscription',
            org_id,
            customer_id,
            scope=scope,
            quantity=quantity,
            payment_method=payment_method_id,
        )

    def quantity_key(self, subscription_item_id: str, quantity: int, scope: str) -> str:
        """`scope` must change whenever the last reported quantity changes (billing period plus record version)."""
        return self.generate_key('quantity', subscription_item_id, quantity=quantity, scope=scope)

    def invoice_payment_key(self, invoice_id: str, attempt: str) -> str:
        return self.generate_key('invoice_pay', invoice_id, attempt=attempt)


stripe_idempotency_manager = StripeIdempotencyManager()
