"""Shared billing configuration, time handling and exceptions."""

from .clock import (
    Clock,
    FixedClock,
    SystemClock,
    add_months,
    anniversary_days_for,
    billing_period_for,
    effective_anniversary_day,
    is_refresh_day,
    last_day_of_month,
)
from .config import BillingConfig, BillingConfigProvider
from .exceptions import (
    BillingError,
    BillingRecordNotFoundError,
    CircuitBreakerOpenError,
    ConcurrencyConflictError,
    ConfigurationError,
    GatewayConfigurationError,
    GatewayRequestError,
    LifecycleTransitionError,
    OrgNotResolvedError,
    PaymentDeclinedError,
    TransientGatewayError,
    WebhookError,
)

__all__ = [
    # Clock
    'Clock',
    'FixedClock',
    'SystemClock',
    'add_months',
    'anniversary_days_for',
    'billing_period_for',
    'effective_anniversary_day',
    'is_refresh_day',
    'last_day_of_month',
    # Config
    'BillingConfig',
    'BillingConfigProvider',
    # Exceptions
    'BillingError',
    'BillingRecordNotFoundError',
    'CircuitBreakerOpenError',
    'ConcurrencyConflictError',
    'ConfigurationError',
    'GatewayConfigurationError',
    'GatewayRequestError',
    'LifecycleTransitionError',
    'OrgNotResolvedError',
    'PaymentDeclinedError',
    'TransientGatewayError',
    'WebhookError',
]
