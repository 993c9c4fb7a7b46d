"""Tests for the daily anniversary scheduler.

Tests cover:
- Batch status and exit codes
- Refresh selection by anniversary and per-org failure isolation
- Escalation phase selection
- Retry of processor cancels that failed at deactivation
- Same-day reruns
- Preview
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from backend.src.billing.domain.billing_record import SubscriptionStatus
from backend.src.billing.shared.exceptions import ConfigurationError, TransientGatewayError
from backend.src.billing.subscriptions.scheduler import (
    PHASE_CANCEL,
    PHASE_ESCALATION,
    PHASE_REFRESH,
    BatchItem,
    BatchResult,
    BatchStatus,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def _billable(store, make_org, org_id, day=15, students=3):
    await make_org(org_id, created_at=_utc(2024, 12, day, 8), students=students)
    await store.ensure_record(org_id)
    await store.update(org_id, lambda r: {'default_payment_method_id': f'pm_{org_id}'})


class TestBatchResult:
    """Tests for batch status aggregation."""

    def _result(self, *oks):
        started = _utc(2025, 3, 14, 2)
        return BatchResult(
            run_date=date(2025, 3, 14),
            started_at=started,
            items=[BatchItem(org_id=f'org-{i}', phase=PHASE_REFRESH, ok=ok) for i, ok in enumerate(oks)],
        )

    def test_empty_run_is_success(self):
        """Test a day with nothing to do succeeds."""
        result = self._result()
        assert result.status == BatchStatus.SUCCESS
        assert result.exit_code == 0

    def test_partial_failure(self):
        """Test some failures make a partial failure with exit code 2."""
        result = self._result(True, False, True)
        assert result.status == BatchStatus.PARTIAL_FAILURE
        assert result.exit_code == 2
        assert [item.org_id for item in result.failed] == ['org-1']

    def test_total_failure(self):
        """Test all items failing is a failure with exit code 1."""
        result = self._result(False, False)
        assert result.status == BatchStatus.FAILURE
        assert result.exit_code == 1

    def test_to_dict(self):
        """Test the serialized result carries counts and items."""
        data = self._result(True, False).to_dict()
        assert data['status'] == 'partial_failure'
        assert data['processed'] == 2
        assert data['failed'] == 1
        assert data['items'][1]['ok'] is False


class TestRunDaily:
    """Tests for AnniversaryScheduler.run_daily."""

    @pytest.mark.asyncio
    async def test_refreshes_only_orgs_due_tomorrow(self, services, gateway, make_org):
        """Test only orgs whose anniversary is tomorrow are refreshed."""
        await _billable(services.store, make_org, 'org-due', day=15)
        await _billable(services.store, make_org, 'org-later', day=20)

        result = await services.scheduler.run_daily()

        assert result.status == BatchStatus.SUCCESS
        assert result.run_date == date(2025, 3, 14)
        assert [(i.org_id, i.phase, i.outcome) for i in result.items] == [('org-due', PHASE_REFRESH, 'created')]
        assert [c['org_id'] for c in gateway.calls_to('create_subscription')] == ['org-due']

    @pytest.mark.asyncio
    async def test_one_org_failure_does_not_stop_others(self, services, gateway, make_org):
        """Test a failing org is reported while the rest of the batch completes."""
        await _billable(services.store, make_org, 'org-a')
        await _billable(services.store, make_org, 'org-b')
        await _billable(services.store, make_org, 'org-c')
        gateway.errors[('create_subscription', 'org-b')] = TransientGatewayError(operation='subscription.create')

        result = await services.scheduler.run_daily()

        assert result.status == BatchStatus.PARTIAL_FAILURE
        assert result.exit_code == 2
        by_org = {item.org_id: item for item in result.items}
        assert by_org['org-a'].ok and by_org['org-c'].ok
        assert by_org['org-b'].ok is False
        assert by_org['org-b'].error['error'] == 'GATEWAY_TRANSIENT'
        assert (await services.store.get('org-b')).processor_subscription_id is None

    @pytest.mark.asyncio
    async def test_all_failing_is_failure(self, services, gateway, make_org):
        """Test a batch where every org fails reports failure."""
        await _billable(services.store, make_org, 'org-a')
        gateway.errors['create_subscription'] = ConfigurationError("STRIPE_PRICE_ID not configured")

        result = await services.scheduler.run_daily()

        assert result.status == BatchStatus.FAILURE
        assert result.items[0].error['error'] == 'CONFIGURATION_ERROR'

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_isolated(self, services, gateway, make_org):
        """Test non-billing exceptions are captured per org."""
        await _billable(services.store, make_org, 'org-a')
        await _billable(services.store, make_org, 'org-b')
        gateway.errors[('create_subscription', 'org-a')] = RuntimeError("boom")

        result = await services.scheduler.run_daily()

        by_org = {item.org_id: item for item in result.items}
        assert by_org['org-a'].error == {'error': 'RuntimeError', 'message': 'boom'}
        assert by_org['org-b'].ok is True

    @pytest.mark.asyncio
    async def test_rerun_same_day_is_unchanged(self, services, gateway, make_org):
        """Test running the batch twice on one day creates nothing new."""
        await _billable(services.store, make_org, 'org-a')
        await services.scheduler.run_daily()

        result = await services.scheduler.run_daily()

        assert [i.outcome for i in result.items] == ['unchanged']
        assert len(gateway.calls_to('create_subscription')) == 1

    @pytest.mark.asyncio
    async def test_past_due_orgs_are_escalated(self, services, gateway, make_org, clock):
        """Test past_due orgs outside the retry window enter the escalation phase."""
        failed_at = clock.now() - timedelta(days=4)
        await _billable(services.store, make_org, 'org-late', day=3)
        await services.store.update('org-late', lambda r: {
            'processor_customer_id': 'cus_late',
            'subscription_status': SubscriptionStatus.PAST_DUE,
            'status_effective_at': failed_at,
            'payment_failure_count': 1,
            'first_payment_failure_at': failed_at,
            'last_payment_failure_at': failed_at,
        })

        result = await services.scheduler.run_daily()

        assert [(i.org_id, i.phase, i.outcome) for i in result.items] == [
            ('org-late', PHASE_ESCALATION, 'no_open_invoice'),
        ]
        assert gateway.calls_to('pay_open_invoice')[0]['customer_id'] == 'cus_late'

    @pytest.mark.asyncio
    async def test_pending_cancels_are_retried(self, services, gateway, make_org):
        """Test a deactivated org whose cancel failed gets its subscription canceled by the batch."""
        await _billable(services.store, make_org, 'org-gone', day=3)
        await services.store.update('org-gone', lambda r: {
            'processor_customer_id': 'cus_gone',
            'processor_subscription_id': 'sub_gone',
            'processor_subscription_item_id': 'si_gone',
        })
        gateway.errors['cancel_subscription'] = TransientGatewayError(operation='subscription.cancel')
        await services.gate.deactivate('org-gone', reason='admin_deactivation')
        gateway.errors.clear()

        result = await services.scheduler.run_daily()

        assert [(i.org_id, i.phase, i.outcome) for i in result.items] == [
            ('org-gone', PHASE_CANCEL, 'cancel_completed'),
        ]
        assert gateway.calls_to('cancel_subscription')[-1] == {'subscription_id': 'sub_gone'}
        record = await services.store.get('org-gone')
        assert record.processor_subscription_id is None
        assert record.cancel_requested_at is None


class TestPreview:
    """Tests for AnniversaryScheduler.preview."""

    @pytest.mark.asyncio
    async def test_preview_does_not_call_processor(self, services, gateway, make_org):
        """Test preview lists the orgs due with estimates and makes no processor calls."""
        await _billable(services.store, make_org, 'org-a', students=8)

        preview = await services.scheduler.preview()

        assert preview['run_date'] == '2025-03-14'
        assert preview['anniversary_date'] == '2025-03-15'
        (row,) = preview['refresh']
        assert row['org_id'] == 'org-a'
        assert row['active_students'] == 8
        assert row['estimated_amount'] == 800
        assert row['has_subscription'] is False
        assert preview['past_due'] == []
        assert preview['pending_cancel'] == []
        assert gateway.calls == []
