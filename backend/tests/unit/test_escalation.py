"""Tests for past_due payment escalation.

Tests cover:
- Invoice retries (paid, declined, nothing open, once per day)
- Catch-up pause after repeated failures
- Deactivation after the grace period
- Retrying a cancel the processor refused at deactivation
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from backend.src.billing.domain.billing_record import OrgStatus, PausedBy, SubscriptionStatus
from backend.src.billing.payments.interfaces import InvoicePaymentResult
from backend.src.billing.shared.exceptions import TransientGatewayError


async def _past_due(store, clock, days_overdue=4, failures=1, org_id='org-1'):
    failed_at = clock.now() - timedelta(days=days_overdue)
    await store.ensure_record(org_id)
    await store.update(org_id, lambda r: {
        'processor_customer_id': 'cus_1',
        'processor_subscription_id': 'sub_1',
        'processor_subscription_item_id': 'si_1',
        'default_payment_method_id': 'pm_1',
        'subscription_status': SubscriptionStatus.PAST_DUE,
        'status_effective_at': failed_at,
        'payment_failure_count': failures,
        'first_payment_failure_at': failed_at,
        'last_payment_failure_at': failed_at,
    })


class TestRetry:
    """Tests for open invoice retries."""

    @pytest.mark.asyncio
    async def test_successful_retry_restores_active(self, services, gateway, make_org, clock):
        """Test a paid retry clears the escalation state."""
        await make_org()
        await _past_due(services.store, clock)
        gateway.invoice_result = InvoicePaymentResult(paid=True, invoice_id='in_1', amount=1500)

        result = await services.escalation.process('org-1')

        assert result.actions == ['retry_paid']
        assert result.days_overdue == 4
        (call,) = gateway.calls_to('pay_open_invoice')
        assert call['customer_id'] == 'cus_1'
        assert call['payment_method_id'] == 'pm_1'
        assert call['idempotency_scope'] == '2025-03-14'

        record = await services.store.get('org-1')
        assert record.subscription_status == SubscriptionStatus.ACTIVE
        assert record.payment_failure_count == 0
        assert record.payment_retry_count == 0
        assert record.last_payment_retry_at is None

    @pytest.mark.asyncio
    async def test_declined_retry_records_attempt(self, services, gateway, make_org, clock):
        """Test a declined retry stays past_due and is recorded, without counting a failure."""
        await make_org()
        await _past_due(services.store, clock)
        gateway.invoice_result = InvoicePaymentResult(paid=False, invoice_id='in_1', decline_code='insufficient_funds')

        result = await services.escalation.process('org-1')

        assert result.actions == ['retry_failed']
        record = await services.store.get('org-1')
        assert record.subscription_status == SubscriptionStatus.PAST_DUE
        assert record.payment_failure_count == 1
        assert record.payment_retry_count == 1
        assert record.last_payment_retry_at == clock.now()
        actions = [entry['action'] for entry in await services.store.list_audit('org-1')]
        assert actions[0] == 'payment_retry_failed'

    @pytest.mark.asyncio
    async def test_retries_at_most_once_per_window(self, services, gateway, make_org, clock):
        """Test a second pass on the same day does not charge again."""
        await make_org()
        await _past_due(services.store, clock)
        gateway.invoice_result = InvoicePaymentResult(paid=False, invoice_id='in_1', decline_code='card_declined')
        await services.escalation.process('org-1')

        result = await services.escalation.process('org-1')

        assert result.actions == []
        assert result.outcome == 'none'
        assert len(gateway.calls_to('pay_open_invoice')) == 1

    @pytest.mark.asyncio
    async def test_no_open_invoice(self, services, gateway, make_org, clock):
        """Test nothing happens when the processor has no open invoice."""
        await make_org()
        await _past_due(services.store, clock)

        result = await services.escalation.process('org-1')

        assert result.actions == ['no_open_invoice']
        assert (await services.store.get('org-1')).subscription_status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_retry_not_due_yet(self, services, gateway, make_org, clock):
        """Test an org that failed recently is not retried before the interval."""
        await make_org()
        await _past_due(services.store, clock, days_overdue=1)

        result = await services.escalation.process('org-1')

        assert result.actions == []
        assert gateway.calls_to('pay_open_invoice') == []

    @pytest.mark.asyncio
    async def test_not_past_due(self, services, gateway, make_org):
        """Test orgs that recovered in the meantime are left alone."""
        await make_org()
        await services.store.ensure_record('org-1')

        result = await services.escalation.process('org-1')

        assert result.actions == ['not_past_due']
        assert gateway.calls == []


class TestPauseAndDeactivate:
    """Tests for pause catch-up and grace period expiry."""

    @pytest.mark.asyncio
    async def test_pauses_after_repeated_failures(self, services, gateway, make_org, clock):
        """Test an active org with enough failures is paused by the system."""
        await make_org()
        await _past_due(services.store, clock, failures=2)

        result = await services.escalation.process('org-1')

        assert result.actions[0] == 'paused'
        org = await services.store.get_org('org-1')
        assert org.status == OrgStatus.PAUSED
        assert org.paused_by == PausedBy.SYSTEM

    @pytest.mark.asyncio
    async def test_deactivates_after_grace_period(self, services, gateway, make_org, clock):
        """Test an org overdue beyond the grace period is deactivated and its subscription canceled."""
        await make_org()
        await _past_due(services.store, clock, days_overdue=15, failures=3)

        result = await services.escalation.process('org-1')

        assert result.actions == ['deactivated']
        assert (await services.store.get_org('org-1')).status == OrgStatus.DEACTIVATED
        assert gateway.calls_to('cancel_subscription') == [{'subscription_id': 'sub_1'}]
        assert gateway.calls_to('pay_open_invoice') == []

    @pytest.mark.asyncio
    async def test_grace_period_boundary(self, services, gateway, make_org, clock):
        """Test exactly grace_period_days overdue is not yet deactivated."""
        await make_org()
        await _past_due(services.store, clock, days_overdue=14)

        result = await services.escalation.process('org-1')

        assert 'deactivated' not in result.actions
        assert (await services.store.get_org('org-1')).status == OrgStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_auto_deactivate_disabled(self, services, gateway, make_org, clock, config):
        """Test grace period expiry is ignored when automatic deactivation is off."""
        await make_org()
        await _past_due(services.store, clock, days_overdue=30)

        result = await services.escalation.process('org-1', replace(config, auto_deactivate_enabled=False))

        assert 'deactivated' not in result.actions
        assert (await services.store.get_org('org-1')).status == OrgStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_deactivated_org_is_skipped(self, services, gateway, make_org, clock):
        """Test escalation never touches a deactivated org."""
        await make_org(status=OrgStatus.DEACTIVATED.value)
        await _past_due(services.store, clock)

        result = await services.escalation.process('org-1')

        assert result.actions == ['inoperable']
        assert gateway.calls == []


class TestPendingCancel:
    """Tests for cancels left owing by a deactivation."""

    @pytest.mark.asyncio
    async def test_failed_cancel_stays_pending(self, services, gateway, make_org, clock):
        """Test a cancel the processor still refuses is kept for the next run."""
        await make_org()
        await _past_due(services.store, clock, days_overdue=15, failures=3)
        gateway.errors['cancel_subscription'] = TransientGatewayError(operation='subscription.cancel')
        await services.escalation.process('org-1')

        result = await services.escalation.process('org-1')

        assert result.actions == ['cancel_failed']
        assert len(gateway.calls_to('cancel_subscription')) == 2
        record = await services.store.get('org-1')
        assert record.processor_subscription_id == 'sub_1'
        assert record.cancel_requested_at is not None

    @pytest.mark.asyncio
    async def test_cancel_completes_on_retry(self, services, gateway, make_org, clock):
        """Test the pending cancel goes through once the processor accepts it."""
        await make_org()
        await _past_due(services.store, clock, days_overdue=15, failures=3)
        gateway.errors['cancel_subscription'] = TransientGatewayError(operation='subscription.cancel')
        await services.escalation.process('org-1')
        gateway.errors.clear()

        result = await services.escalation.process('org-1')

        assert result.actions == ['cancel_completed']
        record = await services.store.get('org-1')
        assert record.processor_subscription_id is None
        assert record.subscription_status == SubscriptionStatus.CANCELED
        assert record.cancel_requested_at is None
        assert gateway.calls_to('pay_open_invoice') == []
