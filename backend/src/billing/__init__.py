"""
Billing Module

Recurring per-student platform subscription billing for school orgs.
Stripe owns invoicing and charging; this module keeps the subscription
quantity in line with active students, mirrors payment outcomes from
webhooks and gates staff access when payment stops.

Submodules:
- shared: Configuration, clock and anniversary math, exceptions
- domain: Billing record, org snapshot, processor events
- store: Tables and the billing record store
- payments: Processor gateway interface
- external: Stripe gateway, circuit breaker, idempotency, webhooks
- subscriptions: Orchestrator, reconciler, escalation, scheduler
- lifecycle: Account lifecycle gate
- notifications: Billing emails
- endpoints: API routes

Usage:
    from backend.src.billing import get_billing_services

    services = get_billing_services()
    result = await services.scheduler.run_daily()
"""

from .shared import (
    BillingConfig,
    BillingConfigProvider,
    BillingError,
    ConfigurationError,
    TransientGatewayError,
)
from .domain import OrgBillingRecord, OrgStatus, ProcessorEvent, SubscriptionStatus
from .services import BillingServices, build_billing_services, get_billing_services

__all__ = [
    'BillingConfig',
    'BillingConfigProvider',
    'BillingError',
    'ConfigurationError',
    'TransientGatewayError',
    'OrgBillingRecord',
    'OrgStatus',
    'ProcessorEvent',
    'SubscriptionStatus',
    'BillingServices',
    'build_billing_services',
    'get_billing_services',
]
