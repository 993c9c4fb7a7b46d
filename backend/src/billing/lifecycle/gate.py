"""
Account Lifecycle Gate

Org operability, separate from subscription status:

    active -> paused -> active            (reversible)
    active | paused -> deactivated        (terminal until reactivated)
    deactivated -> active                 (manual reactivation only)

The authentication layer asks `check_login(org_id, role)` for staff-side
roles; students and parents are never gated here. Transitions are
conditional updates on the org's current status, so racing callers
cannot skip a state. Same-state calls are no-ops.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from backend.src.billing.domain.billing_record import (
    OrgSnapshot,
    OrgStatus,
    PausedBy,
    SubscriptionStatus,
)
from backend.src.billing.payments.interfaces import PaymentProcessorGateway
from backend.src.billing.shared.clock import Clock, SystemClock
from backend.src.billing.shared.exceptions import BillingError, LifecycleTransitionError
from backend.src.billing.store.repository import BillingRecordStore

logger = logging.getLogger(__name__)

STAFF_ROLES = frozenset({'owner', 'admin', 'staff', 'teacher'})

REASON_PAYMENT_FAILED = 'payment_failed'
REASON_GRACE_PERIOD_EXPIRED = 'grace_period_expired'


class AccessReason(str, Enum):
    ACTIVE = "active"
    NOT_GATED = "not_gated"
    PAUSED = "paused"
    DEACTIVATED = "deactivated"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: AccessReason
    detail: Optional[str] = None


class AccountLifecycleGate:
    """
    Pause, deactivate and reactivate orgs, and answer login checks.

    Args:
        store: Billing record store (org rows, billing rows, audit)
        gateway: Processor gateway, used to cancel on deactivation
        clock: Time source
    """

    def __init__(
        self,
        store: BillingRecordStore,
        gateway: PaymentProcessorGateway,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Login check
    # -------------------------------------------------------------------------

    async def check_login(self, org_id: str, role: str) -> AccessDecision:
        if role.lower() not in STAFF_ROLES:
            return AccessDecision(allowed=True, reason=AccessReason.NOT_GATED)

        org = await self.store.get_org(org_id)
        if org.status == OrgStatus.PAUSED:
            return AccessDecision(allowed=False, reason=AccessReason.PAUSED, detail=org.status_reason)
        if org.status == OrgStatus.DEACTIVATED:
            return AccessDecision(allowed=False, reason=AccessReason.DEACTIVATED, detail=org.status_reason)
        return AccessDecision(allowed=True, reason=AccessReason.ACTIVE)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def pause(
        self,
        org_id: str,
        reason: str,
        actor: str = 'admin',
        paused_by: PausedBy = PausedBy.ADMIN,
    ) -> OrgSnapshot:
        """Lock staff logins. Billing carries on unaffected."""
        org = await self.store.get_org(org_id)
        if org.status == OrgStatus.PAUSED:
            return org
        if org.status == OrgStatus.DEACTIVATED:
            raise LifecycleTransitionError(org_id, org.status.value, OrgStatus.PAUSED.value)

        updated = await self.store.transition_org(org_id, [OrgStatus.ACTIVE], {
            'status': OrgStatus.PAUSED,
            'status_reason': reason,
            'paused_by': paused_by,
            'paused_at': self.clock.now(),
        })
        if updated is None:
            return await self._resolve_race(org_id, OrgStatus.PAUSED)

        logger.info(f"[LIFECYCLE] Paused org {org_id} ({paused_by.value}): {reason}")
        await self.store.append_audit(org_id, 'org_paused', {'reason': reason, 'paused_by': paused_by.value}, actor)
        return updated

    async def deactivate(self, org_id: str, reason: str, actor: str = 'admin') -> OrgSnapshot:
        """
        Mark the org not operable and cancel its processor subscription.

        A processor failure while canceling does not stop the deactivation.
        The subscription ids stay on the record with `cancel_requested_at`
        set, and the cancel is retried by the daily batch or by calling
        deactivate again.
        """
        org = await self.store.get_org(org_id)
        if org.status == OrgStatus.DEACTIVATED:
            await self.complete_pending_cancel(org_id)
            return org

        now = self.clock.now()
        updated = await self.store.transition_org(org_id, [OrgStatus.ACTIVE, OrgStatus.PAUSED], {
            'status': OrgStatus.DEACTIVATED,
            'status_reason': reason,
            'deactivated_at': now,
            'paused_by': None,
        })
        if updated is None:
            return await self._resolve_race(org_id, OrgStatus.DEACTIVATED)

        logger.info(f"[LIFECYCLE] Deactivated org {org_id}: {reason}")
        await self.store.append_audit(org_id, 'org_deactivated', {'reason': reason}, actor)
        await self._cancel_billing(org_id)
        return updated

    async def reactivate(self, org_id: str, actor: str = 'admin') -> OrgSnapshot:
        """
        Restore staff access.

        A canceled subscription is recreated on the next billing cycle. A
        cancel that never reached the processor is withdrawn instead, so
        the still-live subscription keeps billing the org.
        """
        org = await self.store.get_org(org_id)
        if org.status == OrgStatus.ACTIVE:
            return org

        updated = await self.store.transition_org(org_id, [OrgStatus.PAUSED, OrgStatus.DEACTIVATED], {
            'status': OrgStatus.ACTIVE,
            'status_reason': None,
            'paused_by': None,
            'paused_at': None,
            'deactivated_at': None,
        })
        if updated is None:
            return await self._resolve_race(org_id, OrgStatus.ACTIVE)

        logger.info(f"[LIFECYCLE] Reactivated org {org_id} (was {org.status.value})")
        await self.store.append_audit(org_id, 'org_reactivated', {'previous_status': org.status.value}, actor)
        await self._withdraw_pending_cancel(org_id, actor)
        return updated

    async def resume_after_payment(self, org_id: str) -> Optional[OrgSnapshot]:
        """Lift a pause the system applied for non-payment. Admin pauses are left alone."""
        org = await self.store.get_org(org_id)
        if org.status != OrgStatus.PAUSED or org.paused_by != PausedBy.SYSTEM:
            return None
        return await self.reactivate(org_id, actor='system')

    async def complete_pending_cancel(self, org_id: str) -> Optional[bool]:
        """
        Retry a processor cancel a deactivation could not finish.

        Returns:
            None when no cancel is owed, otherwise whether it went through
        """
        record = await self.store.get(org_id)
        if record is None or record.cancel_requested_at is None:
            return None
        org = await self.store.get_org(org_id)
        if org.status != OrgStatus.DEACTIVATED:
            return None
        logger.info(f"[LIFECYCLE] Retrying cancel of subscription {record.processor_subscription_id} for org {org_id}")
        return await self._cancel_billing(org_id)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _cancel_billing(self, org_id: str) -> bool:
        record = await self.store.get(org_id)
        if record is None:
            return True

        subscription_id = record.processor_subscription_id
        now = self.clock.now()

        if subscription_id:
            # Owed until the processor confirms; survives a crash mid-call
            await self.store.update(
                org_id,
                lambda current: {'cancel_requested_at': current.cancel_requested_at or now},
            )
            try:
                await self.gateway.cancel_subscription(subscription_id)
            except BillingError as e:
                logger.error(f"[LIFECYCLE] Could not cancel subscription {subscription_id} "
                             f"for org {org_id}: {e.message}")
                await self.store.append_audit(org_id, 'subscription_cancel_failed', e.to_dict())
                return False

        def mark_canceled(current):
            changes = {'cancel_requested_at': None}
            if current.processor_subscription_id == subscription_id:
                changes['processor_subscription_id'] = None
                changes['processor_subscription_item_id'] = None
            if current.accepts_status_at(now):
                changes['subscription_status'] = SubscriptionStatus.CANCELED
                changes['status_effective_at'] = now
            return changes

        await self.store.update(org_id, mark_canceled)
        return True

    async def _withdraw_pending_cancel(self, org_id: str, actor: str) -> None:
        record = await self.store.get(org_id)
        if record is None or record.cancel_requested_at is None:
            return
        await self.store.update(org_id, lambda current: {'cancel_requested_at': None})
        logger.info(f"[LIFECYCLE] Withdrew pending cancel of subscription {record.processor_subscription_id} "
                    f"for org {org_id}")
        await self.store.append_audit(org_id, 'subscription_cancel_withdrawn', {
            'subscription_id': record.processor_subscription_id,
        }, actor)

    async def _resolve_race(self, org_id: str, target: OrgStatus) -> OrgSnapshot:
        """A concurrent transition won; accept it if it reached the same state."""
        org = await self.store.get_org(org_id)
        if org.status != target:
            raise LifecycleTransitionError(org_id, org.status.value, target.value)
        return org
