"""
Stripe Integration Module

- Circuit breaker for API resilience
- Gateway with timeouts, retries and error translation
- Deterministic idempotency keys
- Webhook verification and event parsing

Usage:
    from backend.src.billing.external.stripe import StripeGateway

    gateway = StripeGateway()
    customer_id = await gateway.ensure_customer(org_id, "Oakwood Primary")
"""

from .circuit_breaker import CircuitState, StripeCircuitBreaker
from .client import StripeGateway, configure_stripe, stripe_circuit_breaker, translate_stripe_error
from .idempotency import StripeIdempotencyManager, stripe_idempotency_manager
from .webhooks import WebhookService, parse_event

__all__ = [
    # Circuit Breaker
    'CircuitState',
    'StripeCircuitBreaker',
    'stripe_circuit_breaker',
    # Gateway
    'StripeGateway',
    'configure_stripe',
    'translate_stripe_error',
    # Idempotency
    'StripeIdempotencyManager',
    'stripe_idempotency_manager',
    # Webhook
    'WebhookService',
    'parse_event',
]
