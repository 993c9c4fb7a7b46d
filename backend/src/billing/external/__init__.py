"""
External Integrations Module

Integration with external payment providers:
- Stripe (only payment provider)

Usage:
    from backend.src.billing.external.stripe import StripeGateway, WebhookService
"""

from .stripe import (
    CircuitState,
    StripeCircuitBreaker,
    StripeGateway,
    StripeIdempotencyManager,
    WebhookService,
    parse_event,
    stripe_circuit_breaker,
    stripe_idempotency_manager,
)

__all__ = [
    'CircuitState',
    'StripeCircuitBreaker',
    'StripeGateway',
    'StripeIdempotencyManager',
    'WebhookService',
    'parse_event',
    'stripe_circuit_breaker',
    'stripe_idempotency_manager',
]
