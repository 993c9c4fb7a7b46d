"""
Billing Orchestrator

Per-organization billing state transition:

1. Ensure the Stripe customer exists (created at most once).
2. Count active students (fresh snapshot, never cached).
3. Create the subscription if there is none and a payment method is on
   file, otherwise push the current quantity to the existing item. The
   quantity is sent even when unchanged.
4. Persist count, billing period and mirrored status in one
   compare-and-swap write, skipped entirely when nothing changed.

The processor charges on the anniversary by itself; the scheduler calls
`run` the day before so that charge uses the current student count.

Runs for the same org are serialized in-process by an asyncio lock and
across processes by the store's run lease. Every processor write carries
an idempotency key scoped to the billing period (and, for quantity
updates, the record version), so a repeated or resumed run is a no-op
while a later run with a different outcome is never answered from an
earlier response.

Usage:
    orchestrator = BillingOrchestrator(store, gateway, config_provider)
    result = await orchestrator.run(org_id)
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from backend.src.billing.domain.billing_record import (
    OrgBillingRecord,
    OrgSnapshot,
    SubscriptionStatus,
    estimate_amount,
)
from backend.src.billing.payments.interfaces import PaymentProcessorGateway, SubscriptionResult
from backend.src.billing.shared.clock import Clock, SystemClock, billing_period_for
from backend.src.billing.shared.config import BillingConfig, BillingConfigProvider
from backend.src.billing.shared.exceptions import ConfigurationError
from backend.src.billing.store.repository import BillingRecordStore

logger = logging.getLogger(__name__)


class OrchestratorOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED_NO_PAYMENT_METHOD = "skipped_no_payment_method"
    SKIPPED_LOCKED = "skipped_locked"
    SKIPPED_INOPERABLE = "skipped_inoperable"
    SKIPPED_CANCEL_PENDING = "skipped_cancel_pending"


@dataclass
class OrchestratorResult:
    org_id: str
    outcome: OrchestratorOutcome
    student_count: Optional[int] = None
    subscription_status: Optional[SubscriptionStatus] = None
    billing_period: Optional[date] = None
    record: Optional[OrgBillingRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'org_id': self.org_id,
            'outcome': self.outcome.value,
            'student_count': self.student_count,
            'subscription_status': self.subscription_status.value if self.subscription_status else None,
            'billing_period': self.billing_period.isoformat() if self.billing_period else None,
        }


class BillingOrchestrator:
    """
    Coordinates customer, quantity and subscription for one org at a time.

    Args:
        store: Billing record store
        gateway: Payment processor gateway
        config_provider: Source of the billing policy snapshot
        clock: Time source for billing periods and timestamps
    """

    def __init__(
        self,
        store: BillingRecordStore,
        gateway: PaymentProcessorGateway,
        config_provider: BillingConfigProvider,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.config_provider = config_provider
        self.clock = clock or SystemClock()
        self._org_locks: 'weakref.WeakValueDictionary[str, asyncio.Lock]' = weakref.WeakValueDictionary()

    def _lock_for(self, org_id: str) -> asyncio.Lock:
        lock = self._org_locks.get(org_id)
        if lock is None:
            lock = asyncio.Lock()
            self._org_locks[org_id] = lock
        return lock

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def run(self, org_id: str, config: Optional[BillingConfig] = None) -> OrchestratorResult:
        """
        Bring the org's subscription quantity in line with its active students.

        Raises:
            TransientGatewayError: processor unreachable after retries; the
                record is untouched and the next tick tries again
            ConfigurationError: credentials, price or payment method missing
        """
        config = config or await self.config_provider.get()

        async with self._lock_for(org_id):
            record = await self.store.ensure_record(org_id, config.trial_months)
            token = await self.store.acquire_run_lease(org_id, config.run_lease_seconds)
            if token is None:
                logger.info(f"[ORCHESTRATOR] Org {org_id} is being billed by another worker, skipping")
                return OrchestratorResult(org_id=org_id, outcome=OrchestratorOutcome.SKIPPED_LOCKED, record=record)
            try:
                return await self._run_locked(org_id, record)
            finally:
                await self.store.release_run_lease(org_id, token)

    async def confirm_payment_method(
        self,
        org_id: str,
        payment_method_id: str,
        actor: str = 'admin',
    ) -> OrchestratorResult:
        """
        Store a payment method the org's admin just confirmed, then bill.

        This is the only way `default_payment_method_id` gets set. With no
        subscription yet, the follow-up run creates one.
        """
        config = await self.config_provider.get()

        async with self._lock_for(org_id):
            record = await self.store.ensure_record(org_id, config.trial_months)
            org = await self.store.get_org(org_id)
            record = await self._ensure_customer(org, record)

            await self.gateway.attach_payment_method(
                record.processor_customer_id,
                payment_method_id,
                subscription_id=record.processor_subscription_id,
            )
            previous = record.default_payment_method_id
            await self.store.update(org_id, lambda current: {'default_payment_method_id': payment_method_id})

        if previous != payment_method_id:
            logger.info(f"[ORCHESTRATOR] Payment method confirmed for org {org_id}")
            await self.store.append_audit(
                org_id,
                'payment_method_updated',
                {'payment_method_id': payment_method_id, 'previous': previous},
                actor,
            )
        return await self.run(org_id, config)

    async def create_setup_intent(self, org_id: str) -> str:
        """Start collecting a payment method; returns the processor client secret."""
        config = await self.config_provider.get()
        async with self._lock_for(org_id):
            record = await self.store.ensure_record(org_id, config.trial_months)
            org = await self.store.get_org(org_id)
            record = await self._ensure_customer(org, record)
        return await self.gateway.create_setup_intent(org_id, record.processor_customer_id)

    async def describe(self, org_id: str) -> Dict[str, Any]:
        """Billing record plus live student count and the display-only amount estimate."""
        config = await self.config_provider.get()
        org = await self.store.get_org(org_id)
        record = await self.store.get(org_id)
        student_count = await self.store.count_active_students(org_id)
        return {
            'org': {'org_id': org.org_id, 'name': org.name, 'status': org.status.value},
            'record': record.to_dict() if record else None,
            'active_students': student_count,
            'estimated_amount': estimate_amount(student_count, config.price_per_student),
            'currency': config.currency,
        }

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _run_locked(self, org_id: str, record: OrgBillingRecord) -> OrchestratorResult:
        org = await self.store.get_org(org_id)
        if not org.is_operable:
            logger.info(f"[ORCHESTRATOR] Org {org_id} is {org.status.value}, not billing")
            return OrchestratorResult(org_id=org_id, outcome=OrchestratorOutcome.SKIPPED_INOPERABLE, record=record)
        if record.cancel_requested_at is not None:
            logger.info(f"[ORCHESTRATOR] Org {org_id} has a pending cancel of {record.processor_subscription_id}, "
                        f"not billing")
            return OrchestratorResult(org_id=org_id, outcome=OrchestratorOutcome.SKIPPED_CANCEL_PENDING, record=record)

        # 1. Customer
        record = await self._ensure_customer(org, record)

        # 2. Quantity
        student_count = await self.store.count_active_students(org_id)
        period = billing_period_for(record.anniversary_day, self.clock.today() + timedelta(days=1))

        # 3. Subscription
        if not record.has_subscription():
            if not record.default_payment_method_id:
                logger.info(f"[ORCHESTRATOR] Org {org_id} has no payment method, subscription not created")
                return OrchestratorResult(
                    org_id=org_id,
                    outcome=OrchestratorOutcome.SKIPPED_NO_PAYMENT_METHOD,
                    student_count=student_count,
                    record=record,
                )
            result = await self.gateway.create_subscription(
                org_id=org_id,
                customer_id=record.processor_customer_id,
                quantity=student_count,
                trial_end=record.trial_end_date,
                payment_method_id=record.default_payment_method_id,
                idempotency_scope=period.isoformat(),
            )
            outcome = OrchestratorOutcome.CREATED
        else:
            if not record.default_payment_method_id:
                logger.error(f"[ALERT] Org {org_id} has subscription {record.processor_subscription_id} "
                             f"but no payment method on file")
                raise ConfigurationError(
                    "Subscription exists without a default payment method",
                    code="PAYMENT_METHOD_MISSING",
                    org_id=org_id,
                )
            result = await self.gateway.update_subscription_quantity(
                subscription_id=record.processor_subscription_id,
                subscription_item_id=record.processor_subscription_item_id,
                quantity=student_count,
                # A repeat of this run reuses the key; any persisted change starts a new one
                idempotency_scope=f"{period.isoformat()}:v{record.version}",
            )
            outcome = OrchestratorOutcome.UPDATED

        # 4. Persist
        before = record
        record, written = await self._persist(org_id, result, student_count, period, before.processor_subscription_id)
        if not written:
            outcome = OrchestratorOutcome.UNCHANGED

        if outcome == OrchestratorOutcome.CREATED:
            await self.store.append_audit(org_id, 'subscription_created', {
                'subscription_id': result.subscription_id,
                'quantity': student_count,
                'status': result.status,
            })
        elif outcome == OrchestratorOutcome.UPDATED and before.last_billed_student_count != student_count:
            await self.store.append_audit(org_id, 'quantity_refreshed', {
                'previous': before.last_billed_student_count,
                'quantity': student_count,
                'billing_period': period.isoformat(),
            })

        logger.info(f"[ORCHESTRATOR] Org {org_id}: {outcome.value} "
                    f"(students={student_count}, period={period}, status={record.subscription_status.value})")
        return OrchestratorResult(
            org_id=org_id,
            outcome=outcome,
            student_count=student_count,
            subscription_status=record.subscription_status,
            billing_period=period,
            record=record,
        )

    async def _ensure_customer(self, org: OrgSnapshot, record: OrgBillingRecord) -> OrgBillingRecord:
        if record.processor_customer_id:
            return record

        customer_id = await self.gateway.ensure_customer(org.org_id, org.name, org.billing_email)

        def set_customer(current: OrgBillingRecord):
            if current.processor_customer_id:
                return None
            return {'processor_customer_id': customer_id}

        record = await self.store.update(org.org_id, set_customer)
        await self.store.append_audit(org.org_id, 'customer_created', {'customer_id': record.processor_customer_id})
        return record

    async def _persist(
        self,
        org_id: str,
        result: SubscriptionResult,
        student_count: int,
        period: date,
        billed_subscription_id: Optional[str],
    ) -> Tuple[OrgBillingRecord, bool]:
        observed_at = self.clock.now()
        try:
            status = SubscriptionStatus.from_processor(result.status)
        except ValueError:
            logger.warning(f"[ORCHESTRATOR] Unknown processor status '{result.status}' for org {org_id}")
            status = None

        written = {}

        def persist(current: OrgBillingRecord):
            written['ok'] = False
            if current.processor_subscription_id not in (billed_subscription_id, result.subscription_id):
                # Canceled or replaced while the processor call was in flight
                return None
            changes = {
                'processor_subscription_id': result.subscription_id,
                'processor_subscription_item_id': result.subscription_item_id,
                'last_billed_student_count': student_count,
                'last_billed_period': period,
            }
            if status is not None and current.accepts_status_at(observed_at):
                changes['subscription_status'] = status
            if not current.diff(changes):
                return None

            written['ok'] = True
            changes['last_billed_at'] = observed_at
            # Keep status_effective_at >= last_billed_at
            if current.accepts_status_at(observed_at):
                changes['status_effective_at'] = observed_at
            return changes

        record = await self.store.update(org_id, persist)
        if record.processor_subscription_id not in (billed_subscription_id, result.subscription_id):
            logger.info(f"[ORCHESTRATOR] Subscription {result.subscription_id} for org {org_id} changed "
                        f"during the run, result not stored")
        return record, written['ok']
