"""
Subscription Reconciler

Applies processor events to billing records.

Delivery is unordered and may repeat, so:
- each event id is claimed once in `processed_webhook_events`; replays
  are acknowledged without touching state or sending email again
- status writes are last-writer-wins on the processor's event time
  (`status_effective_at`), not on arrival order
- every write is a compare-and-swap through the store

Usage:
    reconciler = SubscriptionReconciler(store, notifier, gate, config_provider, orchestrator)
    result = await reconciler.process(event)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.src.billing.domain.billing_record import (
    OrgBillingRecord,
    OrgStatus,
    PausedBy,
    SubscriptionStatus,
    escalation_reset,
)
from backend.src.billing.domain.events import (
    HANDLED_EVENT_TYPES,
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    SETUP_INTENT_SUCCEEDED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    ProcessorEvent,
)
from backend.src.billing.lifecycle.gate import REASON_PAYMENT_FAILED, AccountLifecycleGate
from backend.src.billing.notifications.dispatcher import NotificationDispatcher, NotificationKind
from backend.src.billing.shared.config import BillingConfigProvider
from backend.src.billing.shared.exceptions import LifecycleTransitionError, OrgNotResolvedError
from backend.src.billing.store.repository import BillingRecordStore

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"


@dataclass
class ReconcileResult:
    event_id: str
    status: ReconcileStatus
    org_id: Optional[str] = None
    actions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'status': self.status.value,
            'org_id': self.org_id,
            'actions': self.actions,
        }


class SubscriptionReconciler:
    """
    Webhook-driven state machine for platform subscriptions.

    Args:
        store: Billing record store
        notifier: Notification dispatcher
        gate: Account lifecycle gate (escalation pause, resume on payment)
        config_provider: Billing policy source
        orchestrator: Used for `setup_intent.succeeded` confirmations
    """

    def __init__(
        self,
        store: BillingRecordStore,
        notifier: NotificationDispatcher,
        gate: AccountLifecycleGate,
        config_provider: BillingConfigProvider,
        orchestrator=None,
    ):
        self.store = store
        self.notifier = notifier
        self.gate = gate
        self.config_provider = config_provider
        self.orchestrator = orchestrator

    async def process(self, event: ProcessorEvent) -> ReconcileResult:
        """
        Claim, apply and complete one event.

        Raises:
            OrgNotResolvedError: no org matches yet; the event is marked
                failed so a redelivery is processed
            Exception: any handler failure, after marking the event failed
        """
        if event.event_type not in HANDLED_EVENT_TYPES:
            logger.debug(f"[WEBHOOK] Unhandled event type: {event.event_type}")
            return ReconcileResult(event_id=event.event_id, status=ReconcileStatus.IGNORED)

        can_process, reason = await self.store.claim_event(event.event_id, event.event_type)
        if not can_process:
            logger.info(f"[WEBHOOK] Skipping event {event.event_id}: {reason}")
            return ReconcileResult(event_id=event.event_id, status=ReconcileStatus.DUPLICATE)

        logger.info(f"[WEBHOOK] Processing event type: {event.event_type} (ID: {event.event_id})")
        try:
            result = await self._route_event(event)
        except Exception as e:
            await self.store.fail_event(event.event_id, f"{type(e).__name__}: {str(e)[:500]}")
            raise

        await self.store.complete_event(event.event_id, result.org_id)
        return result

    async def _route_event(self, event: ProcessorEvent) -> ReconcileResult:
        if event.event_type == SETUP_INTENT_SUCCEEDED:
            return await self.handle_setup_intent_succeeded(event)

        org_id = await self._resolve_org(event)
        if event.event_type == INVOICE_PAID:
            return await self.handle_invoice_paid(event, org_id)
        if event.event_type == INVOICE_PAYMENT_FAILED:
            return await self.handle_invoice_failed(event, org_id)
        if event.event_type == SUBSCRIPTION_UPDATED:
            return await self.handle_subscription_updated(event, org_id)
        return await self.handle_subscription_deleted(event, org_id)

    async def _resolve_org(self, event: ProcessorEvent) -> str:
        """
        Match an event to an org: local subscription id, then customer id,
        then the org id we stamped into processor metadata.
        """
        org_id = await self.store.find_org_id(
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
        )
        if org_id is None and event.org_id_hint:
            if await self.store.get(event.org_id_hint) is not None:
                org_id = event.org_id_hint

        if org_id is None:
            logger.warning(f"[WEBHOOK] No org for event {event.event_id} "
                           f"(customer={event.customer_id}, subscription={event.subscription_id})")
            raise OrgNotResolvedError(event.event_id, event.event_type)
        return org_id

    def _stale(self, event: ProcessorEvent, org_id: str) -> ReconcileResult:
        logger.info(f"[WEBHOOK] Event {event.event_id} for org {org_id} is older than current status, not applied")
        return ReconcileResult(event_id=event.event_id, status=ReconcileStatus.STALE, org_id=org_id)

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    async def handle_invoice_paid(self, event: ProcessorEvent, org_id: str) -> ReconcileResult:
        """Payment succeeded: active, counters cleared, one success email."""
        if not event.amount:
            # Trial start and fully discounted invoices
            logger.info(f"[INVOICE] Zero-amount invoice {event.invoice_id} for org {org_id}, no action")
            return ReconcileResult(event_id=event.event_id, status=ReconcileStatus.IGNORED, org_id=org_id)

        decision = {}

        def mark_paid(current: OrgBillingRecord):
            accepted = current.accepts_status_at(event.created_at)
            # A newer failure supersedes this payment
            decision['stale'] = not accepted and current.is_past_due()
            if decision['stale']:
                return None
            decision['recovered'] = current.is_past_due() or current.payment_failure_count > 0
            changes = escalation_reset()
            if accepted:
                changes.update(subscription_status=SubscriptionStatus.ACTIVE, status_effective_at=event.created_at)
            return changes

        await self.store.update(org_id, mark_paid)
        if decision['stale']:
            return self._stale(event, org_id)

        actions = ['status_active']
        await self.store.append_audit(org_id, 'payment_succeeded', {
            'invoice_id': event.invoice_id,
            'amount': event.amount,
            'currency': event.currency,
            'recovered': decision['recovered'],
        })

        org = await self.store.get_org(org_id)
        await self.notifier.notify_org(org, NotificationKind.BILLING_SUCCESS, {
            'amount': event.amount,
            'currency': event.currency,
            'invoice_id': event.invoice_id,
        })
        actions.append('notified_success')

        if decision['recovered'] and await self.gate.resume_after_payment(org_id):
            actions.append('org_resumed')

        logger.info(f"[INVOICE] Org {org_id} paid invoice {event.invoice_id}")
        return ReconcileResult(event_id=event.event_id, status=ReconcileStatus.PROCESSED, org_id=org_id, actions=actions)

    async def handle_invoice_failed(self, event: ProcessorEvent, org_id: str) -> ReconcileResult:
        """
        Payment failed: past_due and one more failure on the counter.

        First failure sends "payment failed, will retry"; reaching
        `final_warning_after_failures` sends the final warning once;
        reaching `pause_after_failures` pauses the org.

        A redelivered event that was already counted only re-attempts the
        pause; counter and emails are left as the first delivery set them.
        """
        config = await self.config_provider.get()
        decision = {}

        def mark_failed(current: OrgBillingRecord):
            accepted = current.accepts_status_at(event.created_at)
            # A newer success or cancellation supersedes this failure
            decision['stale'] = not accepted and not current.is_past_due()
            if decision['stale']:
                return None
            decision['replay'] = current.last_failure_event_id == event.event_id
            if decision['replay']:
                decision.update(count=current.payment_failure_count, final=False)
                return None
            count = current.payment_failure_count + 1
            final = count >= config.final_warning_after_failures and not current.final_warning_sent
            decision.update(count=count, final=final)

            changes = {
                'payment_failure_count': count,
                'last_failure_event_id': event.event_id,
                'last_payment_failure_at': max(event.created_at, current.last_payment_failure_at or event.created_at),
            }
            if accepted:
                changes.update(subscription_status=SubscriptionStatus.PAST_DUE, status_effective_at=event.created_at)
            if current.first_payment_failure_at is None:
                changes['first_payment_failure_at'] = event.created_at
            if final:
                changes['final_warning_sent'] = True
            return changes

        await self.store.update(org_id, mark_failed)
        if decision['stale']:
            return self._stale(event, org_id)

        count = decision['count']
        actions = ['status_past_due']
        org = await self.store.get_org(org_id)
        if decision['replay']:
            logger.info(f"[INVOICE] Failure event {event.event_id} for org {org_id} already counted")
        else:
            await self.store.append_audit(org_id, 'payment_failed', {
                'invoice_id': event.invoice_id,
                'amount': event.amount,
                'failure_count': count,
            })
            data = {
                'amount': event.amount,
                'currency': event.currency,
                'invoice_id': event.invoice_id,
                'failure_count': count,
                'grace_period_days': config.grace_period_days,
            }
            if decision['final']:
                await self.notifier.notify_org(org, NotificationKind.PAYMENT_FAILED_FINAL_WARNING, data)
                await self.store.append_audit(org_id, 'final_warning_sent', {'failure_count': count})
                actions.append('notified_final_warning')
            elif count == 1:
                await self.notifier.notify_org(org, NotificationKind.PAYMENT_FAILED, data)
                actions.append('notified_payment_failed')

        if count >= config.pause_after_failures and org.status == OrgStatus.ACTIVE:
            try:
                await self.gate.pause(
                    org_id,
                    reason=REASON_PAYMENT_FAILED,
                    actor='system',
                    paused_by=PausedBy.SYSTEM,
                )
                actions.append('org_paused')
            except LifecycleTransitionError as e:
                logger.info(f"[INVOICE] Not pausing org {org_id}: {e.message}")

        logger.info(f"[INVOICE] Org {org_id} payment failed (failure #{count})")
        return ReconcileResult(event_id=event.event_id, status=ReconcileStatus.PROCESSED, org_id=org_id, actions=actions)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def handle_subscription_updated(self, event: ProcessorEvent, org_id: str) -> ReconcileResult:
        """Mirror the processor's subscription status; backfill ids a crashed run did not persist."""
        try:
            status = SubscriptionStatus.from_processor(event.subscription_status or '')
        except ValueError:
            logger.warning(f"[SUBSCRIPTION] Unknown status '{event.subscription_status}' in {event.event_id}")
            return ReconcileResult(event_id=event.event_id, status=ReconcileStatus.IGNORED, org_id=org_id)

        decision = {}

        def mirror(current: OrgBillingRecord):
            other = current.processor_subscription_id not in (None, event.subscription_id)
            decision['stale'] = other or not current.accepts_status_at(event.created_at)
            if decision['stale']:
                return None
            changes = {
                'subscription_status': status,
                'status_effective_at': event.created_at,
            }
            if current.processor_subscription_id is None and status != SubscriptionStatus.CANCELED:
                changes['processor_subscription_id'] = event.subscription_id
                if event.subscription_item_id:
                    changes['processor_subscription_item_id'] = event.subscription_item_id
            decision['previous'] = current.subscription_status
            return changes

        await self.store.update(org_id, mirror)
        if decision['stale']:
            return self._stale(event, org_id)

        if decision['previous'] != status:
            await self.store.append_audit(org_id, 'subscription_status_changed', {
                'from': decision['previous'].value,
                'to': status.value,
                'subscription_id': event.subscription_id,
            })
        logger.info(f"[SUBSCRIPTION] Org {org_id} subscription {event.subscription_id} -> {status.value}")
        return ReconcileResult(
            event_id=event.event_id,
            status=ReconcileStatus.PROCESSED,
            org_id=org_id,
            actions=[f'status_{status.value}'],
        )

    async def handle_subscription_deleted(self, event: ProcessorEvent, org_id: str) -> ReconcileResult:
        """Processor-side cancellation: canceled, subscription ids cleared."""
        decision = {}

        def cancel(current: OrgBillingRecord):
            other = current.processor_subscription_id not in (None, event.subscription_id)
            decision['stale'] = other or not current.accepts_status_at(event.created_at)
            if decision['stale']:
                return None
            return {
                'subscription_status': SubscriptionStatus.CANCELED,
                'status_effective_at': event.created_at,
                'processor_subscription_id': None,
                'processor_subscription_item_id': None,
            }

        await self.store.update(org_id, cancel)
        if decision['stale']:
            return self._stale(event, org_id)

        await self.store.append_audit(org_id, 'subscription_canceled', {'subscription_id': event.subscription_id})
        logger.info(f"[SUBSCRIPTION] Org {org_id} subscription {event.subscription_id} canceled")
        return ReconcileResult(
            event_id=event.event_id,
            status=ReconcileStatus.PROCESSED,
            org_id=org_id,
            actions=['status_canceled'],
        )

    # -------------------------------------------------------------------------
    # Payment method confirmation
    # -------------------------------------------------------------------------

    async def handle_setup_intent_succeeded(self, event: ProcessorEvent) -> ReconcileResult:
        """A platform SetupIntent completed: the admin confirmed a card in the browser."""
        if event.metadata.get('type') != 'platform' or not event.payment_method_id:
            return ReconcileResult(event_id=event.event_id, status=ReconcileStatus.IGNORED)

        org_id = await self._resolve_org(event)
        if self.orchestrator is None:
            raise RuntimeError("SubscriptionReconciler needs an orchestrator for setup_intent events")

        outcome = await self.orchestrator.confirm_payment_method(org_id, event.payment_method_id, actor='processor')
        return ReconcileResult(
            event_id=event.event_id,
            status=ReconcileStatus.PROCESSED,
            org_id=org_id,
            actions=['payment_method_confirmed', outcome.outcome.value],
        )
