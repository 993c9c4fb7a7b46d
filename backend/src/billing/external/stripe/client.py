"""
Stripe Gateway

Stripe implementation of PaymentProcessorGateway. All Stripe API calls go
through `safe_stripe_call`, which bounds each call with a timeout,
retries transient failures with exponential backoff, trips the circuit
breaker when Stripe keeps failing, and translates Stripe errors into the
billing error taxonomy.

Usage:
    gateway = StripeGateway()
    customer_id = await gateway.ensure_customer(org_id, "Oakwood Primary")
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import stripe
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from backend.core.conf import settings
from backend.src.billing.payments.interfaces import (
    InvoicePaymentResult,
    PaymentProcessorGateway,
    SubscriptionResult,
)
from backend.src.billing.shared.exceptions import (
    CircuitBreakerOpenError,
    ConfigurationError,
    GatewayConfigurationError,
    GatewayRequestError,
    PaymentDeclinedError,
    TransientGatewayError,
)
from .circuit_breaker import StripeCircuitBreaker
from .idempotency import StripeIdempotencyManager, stripe_idempotency_manager

logger = logging.getLogger(__name__)

PLATFORM_METADATA_TYPE = 'platform'


def configure_stripe() -> None:
    """Apply process settings to the Stripe SDK (key, per-request timeout, network retries)."""
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
    stripe.default_http_client = stripe.HTTPXClient(timeout=settings.STRIPE_API_TIMEOUT)


def translate_stripe_error(error: Exception, operation: str) -> Exception:
    """Map a Stripe SDK exception onto the billing error taxonomy."""
    if isinstance(error, stripe.CardError):
        decline_code = getattr(getattr(error, 'error', None), 'decline_code', None) or error.code
        return PaymentDeclinedError(message=error.user_message or str(error), decline_code=decline_code)
    if isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
        return GatewayConfigurationError(message=str(error), operation=operation)
    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransientGatewayError(message=str(error), operation=operation)
    if isinstance(error, stripe.APIError):
        return TransientGatewayError(message=str(error), operation=operation)
    if isinstance(error, stripe.StripeError) and (error.http_status or 0) >= 500:
        return TransientGatewayError(message=str(error), operation=operation)
    if isinstance(error, stripe.StripeError):
        return GatewayRequestError(message=str(error), operation=operation, processor_code=error.code)
    return error


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, TransientGatewayError) and not isinstance(error, CircuitBreakerOpenError)


class StripeGateway(PaymentProcessorGateway):
    """
    Payment processor gateway backed by the Stripe API.

    Args:
        price_id: Per-student price; defaults to STRIPE_PRICE_ID
        circuit_breaker: Shared breaker; one per process by default
        call_timeout: Overall bound per call including SDK network retries
        attempts: Attempts per call for transient failures
        retry_wait: tenacity wait strategy between attempts (exponential by default)
    """

    def __init__(
        self,
        price_id: Optional[str] = None,
        circuit_breaker: Optional[StripeCircuitBreaker] = None,
        idempotency: Optional[StripeIdempotencyManager] = None,
        call_timeout: Optional[float] = None,
        attempts: int = 3,
        retry_wait=None,
        clock: Callable[[], datetime] = None,
    ):
        self.price_id = price_id if price_id is not None else settings.STRIPE_PRICE_ID
        self._circuit_breaker = circuit_breaker or stripe_circuit_breaker
        self._idempotency = idempotency or stripe_idempotency_manager
        self.call_timeout = call_timeout or settings.STRIPE_API_TIMEOUT * (settings.STRIPE_MAX_NETWORK_RETRIES + 1)
        self.attempts = attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=8)
        self._now = clock or (lambda: datetime.now(timezone.utc))

    def _ensure_stripe_configured(self) -> None:
        if not settings.STRIPE_SECRET_KEY:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured", code="STRIPE_NOT_CONFIGURED")

    async def safe_stripe_call(self, operation: str, func: Callable, *args, **kwargs) -> Any:
        """
        Execute a Stripe API call with timeout, retries and circuit breaker.

        Args:
            operation: Short name used in logs and errors (e.g. 'subscription.create')
            func: Async Stripe API function
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Result from Stripe API

        Raises:
            TransientGatewayError: timeout, connection, rate limit, 5xx after retries
            ConfigurationError: missing key, rejected credentials
            PaymentDeclinedError: card declined
            GatewayRequestError: other rejected requests
        """
        self._ensure_stripe_configured()

        async def invoke():
            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=self.call_timeout)
            except asyncio.TimeoutError:
                raise TransientGatewayError(
                    message=f"Stripe call timed out after {self.call_timeout}s", operation=operation
                )
            except stripe.StripeError as e:
                raise translate_stripe_error(e, operation) from e

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self.retry_wait,
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(f"[STRIPE] Retrying {operation} "
                                   f"(attempt {attempt.retry_state.attempt_number}/{self.attempts})")
                return await self._circuit_breaker.safe_call(invoke)

    async def get_circuit_status(self) -> Dict:
        """Get the current circuit breaker status."""
        return await self._circuit_breaker.get_status()

    # -------------------------------------------------------------------------
    # Customer Operations
    # -------------------------------------------------------------------------

    async def ensure_customer(self, org_id: str, org_name: str, email: Optional[str] = None) -> str:
        """
        Find the org's Stripe customer by metadata, or create it.

        The create call carries a key derived from the org id alone, so a
        retry after a lost response returns the same customer.
        """
        found = await self.safe_stripe_call(
            'customer.search',
            stripe.Customer.search_async,
            query=f"metadata['org_id']:'{org_id}'",
            limit=1,
        )
        if found.data:
            return found.data[0].id

        params = {
            'name': org_name,
            'metadata': {'org_id': org_id, 'type': PLATFORM_METADATA_TYPE},
            'idempotency_key': self._idempotency.customer_key(org_id),
        }
        if email:
            params['email'] = email
        customer = await self.safe_stripe_call('customer.create', stripe.Customer.create_async, **params)
        logger.info(f"[STRIPE] Created customer {customer.id} for org {org_id}")
        return customer.id

    async def attach_payment_method(
        self,
        customer_id: str,
        payment_method_id: str,
        subscription_id: Optional[str] = None,
    ) -> None:
        payment_method = await self.safe_stripe_call(
            'payment_method.retrieve',
            stripe.PaymentMethod.retrieve_async,
            payment_method_id,
        )
        # SetupIntents created with a customer attach the method themselves
        if payment_method.customer != customer_id:
            await self.safe_stripe_call(
                'payment_method.attach',
                stripe.PaymentMethod.attach_async,
                payment_method_id,
                customer=customer_id,
            )
        await self.safe_stripe_call(
            'customer.update',
            stripe.Customer.modify_async,
            customer_id,
            invoice_settings={'default_payment_method': payment_method_id},
        )
        if subscription_id:
            await self.safe_stripe_call(
                'subscription.update_payment_method',
                stripe.Subscription.modify_async,
                subscription_id,
                default_payment_method=payment_method_id,
            )

    async def create_setup_intent(self, org_id: str, customer_id: str) -> str:
        intent = await self.safe_stripe_call(
            'setup_intent.create',
            stripe.SetupIntent.create_async,
            customer=customer_id,
            usage='off_session',
            payment_method_types=['card'],
            metadata={'org_id': org_id, 'type': PLATFORM_METADATA_TYPE},
        )
        return intent.client_secret

    # -------------------------------------------------------------------------
    # Subscription Operations
    # -------------------------------------------------------------------------

    async def create_subscription(
        self,
        org_id: str,
        customer_id: str,
        quantity: int,
        trial_end: Optional[datetime],
        payment_method_id: str,
        idempotency_scope: str,
    ) -> SubscriptionResult:
        if not self.price_id:
            raise ConfigurationError("STRIPE_PRICE_ID not configured", code="STRIPE_PRICE_MISSING", org_id=org_id)

        params = {
            'customer': customer_id,
            'items': [{'price': self.price_id, 'quantity': quantity}],
            'default_payment_method': payment_method_id,
            'metadata': {'org_id': org_id, 'type': PLATFORM_METADATA_TYPE},
            'idempotency_key': self._idempotency.subscription_key(
                org_id, customer_id, idempotency_scope, quantity, payment_method_id,
            ),
        }
        # Stripe rejects a trial_end in the past
        if trial_end and trial_end > self._now():
            params['trial_end'] = int(trial_end.timestamp())

        subscription = await self.safe_stripe_call('subscription.create', stripe.Subscription.create_async, **params)
        logger.info(f"[STRIPE] Created subscription {subscription.id} for org {org_id} "
                    f"(quantity={quantity}, status={subscription.status})")
        return SubscriptionResult(
            subscription_id=subscription.id,
            subscription_item_id=subscription['items']['data'][0]['id'],
            status=subscription.status,
        )

    async def update_subscription_quantity(
        self,
        subscription_id: str,
        subscription_item_id: str,
        quantity: int,
        idempotency_scope: str,
    ) -> SubscriptionResult:
        subscription = await self.safe_stripe_call(
            'subscription.update_quantity',
            stripe.Subscription.modify_async,
            subscription_id,
            items=[{'id': subscription_item_id, 'quantity': quantity}],
            proration_behavior='none',
            idempotency_key=self._idempotency.quantity_key(subscription_item_id, quantity, idempotency_scope),
        )
        return SubscriptionResult(
            subscription_id=subscription.id,
            subscription_item_id=subscription_item_id,
            status=subscription.status,
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        try:
            await self.safe_stripe_call('subscription.cancel', stripe.Subscription.cancel_async, subscription_id)
        except GatewayRequestError as e:
            if e.processor_code != 'resource_missing':
                raise
            logger.info(f"[STRIPE] Subscription {subscription_id} already gone, nothing to cancel")
            return
        logger.info(f"[STRIPE] Canceled subscription {subscription_id}")

    # -------------------------------------------------------------------------
    # Invoice Operations
    # -------------------------------------------------------------------------

    async def pay_open_invoice(
        self,
        customer_id: str,
        subscription_id: Optional[str],
        payment_method_id: Optional[str],
        idempotency_scope: str,
    ) -> Optional[InvoicePaymentResult]:
        params = {'customer': customer_id, 'status': 'open', 'limit': 10}
        if subscription_id:
            params['subscription'] = subscription_id
        invoices = await self.safe_stripe_call('invoice.list', stripe.Invoice.list_async, **params)
        if not invoices.data:
            return None

        invoice = min(invoices.data, key=lambda inv: inv.created)
        pay_params = {
            'off_session': True,
            'idempotency_key': self._idempotency.invoice_payment_key(invoice.id, idempotency_scope),
        }
        if payment_method_id:
            pay_params['payment_method'] = payment_method_id

        try:
            paid = await self.safe_stripe_call('invoice.pay', stripe.Invoice.pay_async, invoice.id, **pay_params)
        except PaymentDeclinedError as e:
            logger.info(f"[STRIPE] Invoice {invoice.id} declined: {e.decline_code}")
            return InvoicePaymentResult(
                paid=False,
                invoice_id=invoice.id,
                amount=invoice.amount_due,
                decline_code=e.decline_code,
                message=e.message,
            )

        return InvoicePaymentResult(
            paid=paid.status == 'paid',
            invoice_id=paid.id,
            amount=paid.amount_paid,
        )


configure_stripe()

# Global circuit breaker instance
stripe_circuit_breaker = StripeCircuitBreaker(
    failure_threshold=settings.STRIPE_CIRCUIT_FAILURE_THRESHOLD,
    recovery_timeout=settings.STRIPE_CIRCUIT_RECOVERY_TIMEOUT,
)
