"""
Billing Exceptions

Custom exception classes for billing-related errors.

Taxonomy:
- TransientGatewayError: network timeout, rate limit, processor 5xx.
  Retried with backoff, then deferred to the next scheduler tick.
- ConfigurationError: bad credentials, missing price, missing payment
  method where one is required. Never retried, surfaced as an alert.
- PaymentDeclinedError: expected domain outcome that drives past_due.
- Everything else is a programming or data error for that org only.
"""


class BillingError(Exception):
    """
    Base exception for all billing-related errors.

    All billing exceptions inherit from this class, allowing for
    broad exception handling when needed.
    """

    status_code = 400

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


# -----------------------------------------------------------------------------
# Gateway errors
# -----------------------------------------------------------------------------

class TransientGatewayError(BillingError):
    """Raised for processor failures that are expected to clear on retry."""

    status_code = 503

    def __init__(
        self,
        message: str = "Payment processor temporarily unavailable",
        code: str = "GATEWAY_TRANSIENT",
        operation: str = None
    ):
        super().__init__(
            message=message,
            code=code,
            details={'operation': operation} if operation else {}
        )
        self.operation = operation


class CircuitBreakerOpenError(TransientGatewayError):
    """Raised when the circuit breaker is open and preventing calls."""

    def __init__(
        self,
        message: str = "Circuit breaker is open. Service temporarily unavailable.",
        service_name: str = "stripe",
        reset_time: float = None
    ):
        super().__init__(message=message, code="CIRCUIT_BREAKER_OPEN")
        self.details = {
            'service_name': service_name,
            'reset_time': reset_time
        }
        self.service_name = service_name
        self.reset_time = reset_time


class ConfigurationError(BillingError):
    """
    Raised when billing cannot proceed because of operator-fixable setup.

    Examples:
        - STRIPE_SECRET_KEY or STRIPE_PRICE_ID missing
        - Org has a live subscription but no default payment method
    """

    status_code = 500

    def __init__(self, message: str, code: str = "CONFIGURATION_ERROR", org_id: str = None):
        super().__init__(
            message=message,
            code=code,
            details={'org_id': org_id} if org_id else {}
        )
        self.org_id = org_id


class GatewayConfigurationError(ConfigurationError):
    """Raised when the processor rejects our credentials or permissions."""

    def __init__(self, message: str = "Payment processor rejected credentials", operation: str = None):
        super().__init__(message=message, code="GATEWAY_CONFIGURATION")
        if operation:
            self.details['operation'] = operation


class GatewayRequestError(BillingError):
    """Raised when the processor rejects a request as invalid (not retried)."""

    status_code = 502

    def __init__(self, message: str, operation: str = None, processor_code: str = None):
        details = {}
        if operation:
            details['operation'] = operation
        if processor_code:
            details['processor_code'] = processor_code
        super().__init__(message=message, code="GATEWAY_REQUEST_REJECTED", details=details)
        self.processor_code = processor_code


class PaymentDeclinedError(BillingError):
    """
    Raised when a charge attempt is declined.

    Examples:
        - Card declined
        - Card expired
        - Insufficient funds
    """

    status_code = 402

    def __init__(
        self,
        message: str = "Payment declined",
        decline_code: str = None,
        invoice_id: str = None
    ):
        details = {}
        if decline_code:
            details['decline_code'] = decline_code
        if invoice_id:
            details['invoice_id'] = invoice_id
        super().__init__(message=message, code="PAYMENT_DECLINED", details=details)
        self.decline_code = decline_code
        self.invoice_id = invoice_id


# -----------------------------------------------------------------------------
# Store errors
# -----------------------------------------------------------------------------

class BillingRecordNotFoundError(BillingError):
    """Raised when an org (or its billing record) does not exist."""

    status_code = 404

    def __init__(self, org_id: str):
        super().__init__(
            message=f"No organization or billing record for '{org_id}'",
            code="BILLING_RECORD_NOT_FOUND",
            details={'org_id': org_id}
        )
        self.org_id = org_id


class ConcurrencyConflictError(BillingError):
    """Raised when a compare-and-swap update keeps losing to concurrent writers."""

    status_code = 409

    def __init__(self, org_id: str, attempts: int):
        super().__init__(
            message=f"Billing record for '{org_id}' changed concurrently {attempts} times",
            code="CONCURRENCY_CONFLICT",
            details={'org_id': org_id, 'attempts': attempts}
        )
        self.org_id = org_id
        self.attempts = attempts


# -----------------------------------------------------------------------------
# Webhook / lifecycle errors
# -----------------------------------------------------------------------------

class WebhookError(BillingError):
    """
    Raised when there's an issue processing a webhook.

    Examples:
        - Invalid signature
        - Unparseable payload
    """

    def __init__(
        self,
        message: str = "Webhook processing error",
        code: str = "WEBHOOK_ERROR",
        event_id: str = None,
        event_type: str = None
    ):
        details = {}
        if event_id:
            details['event_id'] = event_id
        if event_type:
            details['event_type'] = event_type

        super().__init__(
            message=message,
            code=code,
            details=details
        )
        self.event_id = event_id
        self.event_type = event_type


class OrgNotResolvedError(WebhookError):
    """Raised when an event cannot be matched to an org yet; the processor should redeliver."""

    status_code = 503

    def __init__(self, event_id: str, event_type: str):
        super().__init__(
            message="Event does not match any organization yet",
            code="ORG_NOT_RESOLVED",
            event_id=event_id,
            event_type=event_type
        )


class LifecycleTransitionError(BillingError):
    """Raised for an org status change the lifecycle state machine does not allow."""

    status_code = 409

    def __init__(self, org_id: str, current: str, target: str):
        super().__init__(
            message=f"Cannot move organization from '{current}' to '{target}'",
            code="INVALID_LIFECYCLE_TRANSITION",
            details={'org_id': org_id, 'current': current, 'target': target}
        )
        self.org_id = org_id
        self.current = current
        self.target = target
