"""
Payment Escalation

Daily handling of past_due orgs picked up by the scheduler:

- retry the open invoice every `retry_interval_days`
- pause the org once `pause_after_failures` failures have accumulated
  (normally already done by the webhook; this catches up)
- deactivate once the org has been overdue longer than
  `grace_period_days`, when automatic deactivation is enabled
- finish a processor-side cancel a deactivation could not complete

Failure counting and emails stay with the webhook path: a failed retry
makes Stripe emit `invoice.payment_failed`, which the reconciler counts
exactly once.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from backend.src.billing.domain.billing_record import (
    OrgBillingRecord,
    OrgStatus,
    PausedBy,
    SubscriptionStatus,
    escalation_reset,
)
from backend.src.billing.lifecycle.gate import (
    REASON_GRACE_PERIOD_EXPIRED,
    REASON_PAYMENT_FAILED,
    AccountLifecycleGate,
)
from backend.src.billing.payments.interfaces import PaymentProcessorGateway
from backend.src.billing.shared.clock import Clock, SystemClock
from backend.src.billing.shared.config import BillingConfig, BillingConfigProvider
from backend.src.billing.store.repository import BillingRecordStore

logger = logging.getLogger(__name__)


@dataclass
class EscalationResult:
    org_id: str
    actions: List[str] = field(default_factory=list)
    days_overdue: Optional[int] = None

    @property
    def outcome(self) -> str:
        return ','.join(self.actions) or 'none'

    def to_dict(self) -> Dict[str, Any]:
        return {'org_id': self.org_id, 'actions': self.actions, 'days_overdue': self.days_overdue}


class PaymentEscalationService:
    """
    Retry, pause and deactivate for orgs with failed payments.

    Args:
        store: Billing record store
        gateway: Payment processor gateway (invoice retries)
        gate: Account lifecycle gate
        config_provider: Billing policy source
        clock: Time source
    """

    def __init__(
        self,
        store: BillingRecordStore,
        gateway: PaymentProcessorGateway,
        gate: AccountLifecycleGate,
        config_provider: BillingConfigProvider,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.gate = gate
        self.config_provider = config_provider
        self.clock = clock or SystemClock()

    async def process(self, org_id: str, config: Optional[BillingConfig] = None) -> EscalationResult:
        config = config or await self.config_provider.get()
        result = EscalationResult(org_id=org_id)

        record = await self.store.get(org_id)
        if record is not None and record.cancel_requested_at is not None:
            result.actions.append(await self._retry_cancel(org_id))
            return result

        if record is None or not record.is_past_due():
            result.actions.append('not_past_due')
            return result

        org = await self.store.get_org(org_id)
        if not org.is_operable:
            result.actions.append('inoperable')
            return result

        now = self.clock.now()
        overdue_since = record.first_payment_failure_at or record.status_effective_at
        result.days_overdue = (now - overdue_since).days

        if config.auto_deactivate_enabled and result.days_overdue > config.grace_period_days:
            logger.warning(f"[ESCALATION] Org {org_id} overdue {result.days_overdue} days "
                           f"(grace {config.grace_period_days}), deactivating")
            await self.gate.deactivate(org_id, REASON_GRACE_PERIOD_EXPIRED, actor='system')
            result.actions.append('deactivated')
            return result

        if record.payment_failure_count >= config.pause_after_failures and org.status == OrgStatus.ACTIVE:
            await self.gate.pause(org_id, reason=REASON_PAYMENT_FAILED, actor='system', paused_by=PausedBy.SYSTEM)
            result.actions.append('paused')

        if self._retry_due(record, now, config):
            result.actions.append(await self._retry_payment(record, now))

        return result

    async def _retry_cancel(self, org_id: str) -> str:
        canceled = await self.gate.complete_pending_cancel(org_id)
        if canceled is None:
            return 'no_pending_cancel'
        return 'cancel_completed' if canceled else 'cancel_failed'

    def _retry_due(self, record: OrgBillingRecord, now: datetime, config: BillingConfig) -> bool:
        attempts = [t for t in (record.last_payment_retry_at, record.last_payment_failure_at) if t]
        last_attempt = max(attempts) if attempts else record.status_effective_at
        return now - last_attempt >= timedelta(days=config.retry_interval_days)

    async def _retry_payment(self, record: OrgBillingRecord, now: datetime) -> str:
        org_id = record.org_id
        if not record.processor_customer_id:
            logger.warning(f"[ESCALATION] Org {org_id} is past_due without a processor customer")
            return 'no_customer'

        today = now.date()
        claimed = {}

        def mark_attempt(current: OrgBillingRecord):
            claimed['ok'] = not (current.last_payment_retry_at and current.last_payment_retry_at.date() == today)
            if not claimed['ok']:
                return None
            return {
                'payment_retry_count': current.payment_retry_count + 1,
                'last_payment_retry_at': now,
            }

        # Record the attempt before charging so a crash cannot cause a second charge today
        updated = await self.store.update(org_id, mark_attempt)
        if not claimed['ok']:
            logger.info(f"[ESCALATION] Org {org_id} was already retried today, skipping")
            return 'retry_skipped'
        attempt = updated.payment_retry_count

        outcome = await self.gateway.pay_open_invoice(
            customer_id=record.processor_customer_id,
            subscription_id=record.processor_subscription_id,
            payment_method_id=record.default_payment_method_id,
            idempotency_scope=today.isoformat(),
        )
        if outcome is None:
            logger.info(f"[ESCALATION] Org {org_id} has no open invoice to retry")
            return 'no_open_invoice'

        if not outcome.paid:
            logger.info(f"[ESCALATION] Retry #{attempt} for org {org_id} declined ({outcome.decline_code})")
            await self.store.append_audit(org_id, 'payment_retry_failed', {
                'attempt': attempt,
                'invoice_id': outcome.invoice_id,
                'decline_code': outcome.decline_code,
            })
            return 'retry_failed'

        def mark_paid(current: OrgBillingRecord):
            if not current.accepts_status_at(now):
                return None
            return {
                'subscription_status': SubscriptionStatus.ACTIVE,
                'status_effective_at': now,
                **escalation_reset(),
            }

        await self.store.update(org_id, mark_paid)
        await self.store.append_audit(org_id, 'payment_retry_succeeded', {
            'attempt': attempt,
            'invoice_id': outcome.invoice_id,
            'amount': outcome.amount,
        })
        await self.gate.resume_after_payment(org_id)
        logger.info(f"[ESCALATION] Retry #{attempt} for org {org_id} paid invoice {outcome.invoice_id}")
        return 'retry_paid'
