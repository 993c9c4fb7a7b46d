"""
Billing Services

Wires the billing components together. The app, the cron job and the CLI
all go through `get_billing_services()`; tests build their own set with
`build_billing_services(...)` around a fake gateway and notifier.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.billing.lifecycle.gate import AccountLifecycleGate
from backend.src.billing.notifications.dispatcher import NotificationDispatcher, get_notification_dispatcher
from backend.src.billing.payments.interfaces import PaymentProcessorGateway
from backend.src.billing.shared.clock import Clock, SystemClock
from backend.src.billing.shared.config import BillingConfig, BillingConfigProvider
from backend.src.billing.store.repository import BillingRecordStore
from backend.src.billing.subscriptions.escalation import PaymentEscalationService
from backend.src.billing.subscriptions.orchestrator import BillingOrchestrator
from backend.src.billing.subscriptions.reconciler import SubscriptionReconciler
from backend.src.billing.subscriptions.scheduler import AnniversaryScheduler


@dataclass
class BillingServices:
    store: BillingRecordStore
    gateway: PaymentProcessorGateway
    notifier: NotificationDispatcher
    config_provider: BillingConfigProvider
    gate: AccountLifecycleGate
    orchestrator: BillingOrchestrator
    reconciler: SubscriptionReconciler
    escalation: PaymentEscalationService
    scheduler: AnniversaryScheduler
    clock: Clock


def build_billing_services(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[PaymentProcessorGateway] = None,
    notifier: Optional[NotificationDispatcher] = None,
    clock: Optional[Clock] = None,
    config: Optional[BillingConfig] = None,
) -> BillingServices:
    """
    Build a full set of billing services.

    Args:
        session_factory: Database sessions; defaults to the app database
        gateway: Processor gateway; defaults to StripeGateway
        notifier: Email sender; defaults per NOTIFICATION_API_URL
        clock: Time source; a FixedClock runs the batch "as of" another day
        config: Fixed billing policy; by default loaded from settings plus
            platform overrides

    Returns:
        BillingServices sharing one store, clock and config provider
    """
    clock = clock or SystemClock()
    if gateway is None:
        from backend.src.billing.external.stripe.client import StripeGateway
        gateway = StripeGateway(clock=clock.now)
    notifier = notifier or get_notification_dispatcher()

    store = BillingRecordStore(session_factory=session_factory, clock=clock)
    if config is not None:
        config_provider = BillingConfigProvider.static(config)
    else:
        config_provider = BillingConfigProvider(store=store, clock=clock)

    gate = AccountLifecycleGate(store, gateway, clock)
    orchestrator = BillingOrchestrator(store, gateway, config_provider, clock)
    reconciler = SubscriptionReconciler(store, notifier, gate, config_provider, orchestrator)
    escalation = PaymentEscalationService(store, gateway, gate, config_provider, clock)
    scheduler = AnniversaryScheduler(store, orchestrator, escalation, config_provider, clock)

    return BillingServices(
        store=store,
        gateway=gateway,
        notifier=notifier,
        config_provider=config_provider,
        gate=gate,
        orchestrator=orchestrator,
        reconciler=reconciler,
        escalation=escalation,
        scheduler=scheduler,
        clock=clock,
    )


_services: Optional[BillingServices] = None


def get_billing_services() -> BillingServices:
    """Process-wide services (one gateway, one circuit breaker, one set of org locks)."""
    global _services
    if _services is None:
        _services = build_billing_services()
    return _services
