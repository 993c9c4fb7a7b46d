"""Tests for the account lifecycle gate.

Tests cover:
- Login checks per role and org status
- Pause, deactivate and reactivate transitions
- Subscription cancellation on deactivation
- Cancels the processor refused: retry, withdrawal on reactivation
"""

import pytest

from backend.src.billing.domain.billing_record import OrgStatus, PausedBy, SubscriptionStatus
from backend.src.billing.lifecycle.gate import AccessReason
from backend.src.billing.shared.exceptions import LifecycleTransitionError, TransientGatewayError
from backend.src.billing.subscriptions.orchestrator import OrchestratorOutcome


async def _subscribed(store, org_id='org-1'):
    await store.ensure_record(org_id)
    await store.update(org_id, lambda r: {
        'processor_customer_id': 'cus_1',
        'processor_subscription_id': 'sub_1',
        'processor_subscription_item_id': 'si_1',
        'default_payment_method_id': 'pm_1',
        'subscription_status': SubscriptionStatus.ACTIVE,
    })


class TestLoginCheck:
    """Tests for check_login."""

    @pytest.mark.asyncio
    async def test_active_org_allows_staff(self, services, make_org):
        """Test staff of an active org may log in."""
        await make_org()

        decision = await services.gate.check_login('org-1', 'teacher')

        assert decision.allowed is True
        assert decision.reason == AccessReason.ACTIVE

    @pytest.mark.asyncio
    async def test_paused_org_blocks_staff_only(self, services, make_org):
        """Test a pause locks staff out while students and parents keep access."""
        await make_org()
        await services.gate.pause('org-1', reason='payment_failed', paused_by=PausedBy.SYSTEM, actor='system')

        staff = await services.gate.check_login('org-1', 'Admin')
        student = await services.gate.check_login('org-1', 'student')
        parent = await services.gate.check_login('org-1', 'parent')

        assert staff.allowed is False
        assert staff.reason == AccessReason.PAUSED
        assert staff.detail == 'payment_failed'
        assert student.allowed is True
        assert student.reason == AccessReason.NOT_GATED
        assert parent.allowed is True

    @pytest.mark.asyncio
    async def test_deactivated_org_blocks_staff(self, services, make_org):
        """Test a deactivated org refuses staff logins."""
        await make_org(status=OrgStatus.DEACTIVATED.value)

        decision = await services.gate.check_login('org-1', 'owner')

        assert decision.allowed is False
        assert decision.reason == AccessReason.DEACTIVATED


class TestTransitions:
    """Tests for pause, deactivate and reactivate."""

    @pytest.mark.asyncio
    async def test_pause_is_idempotent(self, services, make_org):
        """Test pausing an already paused org changes nothing."""
        await make_org()
        await services.gate.pause('org-1', reason='term_break')

        org = await services.gate.pause('org-1', reason='other')

        assert org.status == OrgStatus.PAUSED
        assert org.status_reason == 'term_break'
        assert org.paused_by == PausedBy.ADMIN
        actions = [entry['action'] for entry in await services.store.list_audit('org-1')]
        assert actions.count('org_paused') == 1

    @pytest.mark.asyncio
    async def test_cannot_pause_deactivated_org(self, services, make_org):
        """Test a deactivated org must be reactivated before it can be paused."""
        await make_org(status=OrgStatus.DEACTIVATED.value)

        with pytest.raises(LifecycleTransitionError):
            await services.gate.pause('org-1', reason='term_break')

    @pytest.mark.asyncio
    async def test_deactivate_cancels_subscription(self, services, gateway, make_org):
        """Test deactivation cancels the processor subscription and clears it locally."""
        await make_org()
        await _subscribed(services.store)

        org = await services.gate.deactivate('org-1', reason='grace_period_expired', actor='system')

        assert org.status == OrgStatus.DEACTIVATED
        assert gateway.calls_to('cancel_subscription') == [{'subscription_id': 'sub_1'}]
        record = await services.store.get('org-1')
        assert record.subscription_status == SubscriptionStatus.CANCELED
        assert record.processor_subscription_id is None
        assert record.processor_customer_id == 'cus_1'

    @pytest.mark.asyncio
    async def test_deactivate_survives_cancel_failure(self, services, gateway, make_org):
        """Test a processor failure while canceling does not block deactivation."""
        await make_org()
        await _subscribed(services.store)
        gateway.errors['cancel_subscription'] = TransientGatewayError(operation='subscription.cancel')

        org = await services.gate.deactivate('org-1', reason='admin_deactivation')

        assert org.status == OrgStatus.DEACTIVATED
        actions = [entry['action'] for entry in await services.store.list_audit('org-1')]
        assert 'subscription_cancel_failed' in actions
        record = await services.store.get('org-1')
        assert record.processor_subscription_id == 'sub_1'
        assert record.cancel_requested_at is not None

    @pytest.mark.asyncio
    async def test_deactivate_twice_cancels_once(self, services, gateway, make_org):
        """Test deactivating a deactivated org is a no-op."""
        await make_org()
        await _subscribed(services.store)
        await services.gate.deactivate('org-1', reason='admin_deactivation')

        await services.gate.deactivate('org-1', reason='admin_deactivation')

        assert len(gateway.calls_to('cancel_subscription')) == 1

    @pytest.mark.asyncio
    async def test_reactivate_restores_access(self, services, make_org):
        """Test reactivation clears the status reason and restores staff logins."""
        await make_org()
        await services.gate.deactivate('org-1', reason='admin_deactivation')

        org = await services.gate.reactivate('org-1')

        assert org.status == OrgStatus.ACTIVE
        assert org.status_reason is None
        assert (await services.gate.check_login('org-1', 'staff')).allowed is True

    @pytest.mark.asyncio
    async def test_resume_after_payment_only_lifts_system_pause(self, services, make_org):
        """Test an admin pause is not lifted by a payment."""
        await make_org()
        await services.gate.pause('org-1', reason='term_break', paused_by=PausedBy.ADMIN)

        assert await services.gate.resume_after_payment('org-1') is None
        assert (await services.store.get_org('org-1')).status == OrgStatus.PAUSED


class TestPendingCancel:
    """Tests for a deactivation whose processor cancel failed."""

    @pytest.mark.asyncio
    async def test_failed_cancel_keeps_subscription(self, services, gateway, make_org, clock):
        """Test the live subscription stays on the record until the processor confirms the cancel."""
        await make_org()
        await _subscribed(services.store)
        gateway.errors['cancel_subscription'] = TransientGatewayError(operation='subscription.cancel')

        await services.gate.deactivate('org-1', reason='admin_deactivation')

        record = await services.store.get('org-1')
        assert record.processor_subscription_id == 'sub_1'
        assert record.processor_subscription_item_id == 'si_1'
        assert record.subscription_status == SubscriptionStatus.ACTIVE
        assert record.cancel_requested_at == clock.now()
        assert await services.store.select_pending_cancel() == ['org-1']

    @pytest.mark.asyncio
    async def test_deactivate_again_retries_cancel(self, services, gateway, make_org):
        """Test calling deactivate on a deactivated org finishes a cancel that failed."""
        await make_org()
        await _subscribed(services.store)
        gateway.errors['cancel_subscription'] = TransientGatewayError(operation='subscription.cancel')
        await services.gate.deactivate('org-1', reason='admin_deactivation')
        gateway.errors.clear()

        await services.gate.deactivate('org-1', reason='admin_deactivation')

        assert gateway.calls_to('cancel_subscription') == [{'subscription_id': 'sub_1'}] * 2
        record = await services.store.get('org-1')
        assert record.processor_subscription_id is None
        assert record.subscription_status == SubscriptionStatus.CANCELED
        assert record.cancel_requested_at is None
        assert await services.store.select_pending_cancel() == []

    @pytest.mark.asyncio
    async def test_complete_pending_cancel_without_pending_cancel(self, services, make_org):
        """Test there is nothing to retry after a clean deactivation."""
        await make_org()
        await _subscribed(services.store)
        await services.gate.deactivate('org-1', reason='admin_deactivation')

        assert await services.gate.complete_pending_cancel('org-1') is None

    @pytest.mark.asyncio
    async def test_reactivate_after_failed_cancel_reuses_subscription(self, services, gateway, make_org):
        """Test a reactivated org keeps billing on its live subscription instead of getting a second one."""
        await make_org()
        await _subscribed(services.store)
        gateway.errors['cancel_subscription'] = TransientGatewayError(operation='subscription.cancel')
        await services.gate.deactivate('org-1', reason='admin_deactivation')

        await services.gate.reactivate('org-1')
        result = await services.orchestrator.run('org-1')

        assert result.outcome == OrchestratorOutcome.UPDATED
        assert gateway.calls_to('create_subscription') == []
        (update,) = gateway.calls_to('update_subscription_quantity')
        assert update['subscription_id'] == 'sub_1'
        record = await services.store.get('org-1')
        assert record.processor_subscription_id == 'sub_1'
        assert record.cancel_requested_at is None
        actions = [entry['action'] for entry in await services.store.list_audit('org-1')]
        assert 'subscription_cancel_withdrawn' in actions

    @pytest.mark.asyncio
    async def test_run_skips_org_with_pending_cancel(self, services, gateway, make_org, clock):
        """Test billing never touches a subscription that is waiting to be canceled."""
        await make_org()
        await _subscribed(services.store)
        await services.store.update('org-1', lambda r: {'cancel_requested_at': clock.now()})

        result = await services.orchestrator.run('org-1')

        assert result.outcome == OrchestratorOutcome.SKIPPED_CANCEL_PENDING
        assert gateway.calls_to('create_subscription') == []
        assert gateway.calls_to('update_subscription_quantity') == []
