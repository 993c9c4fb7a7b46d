"""Tests for the billing record store.

Tests cover:
- Record creation from the org's creation date
- Compare-and-swap updates and version conflicts
- Scheduler selections (month-end anniversaries, past_due retry window)
- Webhook event claims
- Per-org run lease
- Audit log
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from backend.src.billing.domain.billing_record import OrgStatus, SubscriptionStatus
from backend.src.billing.shared.exceptions import BillingRecordNotFoundError, ConcurrencyConflictError
from backend.src.billing.store.repository import BillingRecordStore


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestEnsureRecord:
    """Tests for first-touch record creation."""

    @pytest.mark.asyncio
    async def test_anniversary_and_trial_from_creation_date(self, store, make_org):
        """Test anniversary day and trial end derive from the org's creation date."""
        await make_org('org-31', created_at=_utc(2025, 1, 31, 10))

        record = await store.ensure_record('org-31', trial_months=1)

        assert record.anniversary_day == 31
        assert record.trial_end_date == _utc(2025, 2, 28, 10)
        assert record.subscription_status == SubscriptionStatus.TRIALING
        assert record.processor_subscription_id is None

    @pytest.mark.asyncio
    async def test_second_call_returns_existing_record(self, store, make_org):
        """Test ensure_record never rewrites an existing record."""
        await make_org()
        first = await store.ensure_record('org-1')
        await store.update('org-1', lambda r: {'processor_customer_id': 'cus_1'})

        second = await store.ensure_record('org-1', trial_months=6)

        assert second.processor_customer_id == 'cus_1'
        assert second.trial_end_date == first.trial_end_date

    @pytest.mark.asyncio
    async def test_unknown_org(self, store):
        """Test ensure_record for a missing org raises not found."""
        with pytest.raises(BillingRecordNotFoundError):
            await store.ensure_record('missing')


class TestCompareAndSwap:
    """Tests for BillingRecordStore.update."""

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, store, make_org):
        """Test a real change is persisted and increments the version."""
        await make_org()
        record = await store.ensure_record('org-1')

        updated = await store.update('org-1', lambda r: {'payment_failure_count': r.payment_failure_count + 1})

        assert updated.payment_failure_count == 1
        assert updated.version == record.version + 1
        assert (await store.get('org-1')).payment_failure_count == 1

    @pytest.mark.asyncio
    async def test_update_stamps_updated_at_from_clock(self, store, make_org, clock):
        """Test updated_at follows the store's clock, not the wall clock."""
        await make_org()
        created = await store.ensure_record('org-1')
        clock.advance(days=3)

        await store.update('org-1', lambda r: {'payment_retry_count': 1})
        clock.advance(hours=1)
        await store.update('org-1', lambda r: {'payment_retry_count': 1})

        record = await store.get('org-1')
        assert created.updated_at == created.created_at
        assert record.updated_at == created.created_at + timedelta(days=3)

    @pytest.mark.asyncio
    async def test_noop_update_keeps_version(self, store, make_org):
        """Test mutations that change nothing do not write."""
        await make_org()
        record = await store.ensure_record('org-1')

        same = await store.update('org-1', lambda r: {'subscription_status': SubscriptionStatus.TRIALING})
        nothing = await store.update('org-1', lambda r: None)

        assert same.version == record.version
        assert nothing.version == record.version

    @pytest.mark.asyncio
    async def test_retries_after_version_conflict(self, store, make_org):
        """Test a stale write is retried with the mutation re-run on fresh data."""
        await make_org()
        await store.ensure_record('org-1')

        real_commit = AsyncSession.commit
        commits = {'count': 0}

        async def flaky_commit(self):
            commits['count'] += 1
            if commits['count'] == 1:
                raise StaleDataError("concurrent update")
            return await real_commit(self)

        mutations = []

        def mutate(record):
            mutations.append(record.version)
            return {'payment_retry_count': record.payment_retry_count + 1}

        with patch.object(AsyncSession, 'commit', flaky_commit):
            updated = await store.update('org-1', mutate)

        assert len(mutations) == 2
        assert updated.payment_retry_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, session_factory, clock, make_org):
        """Test persistent conflicts raise ConcurrencyConflictError."""
        store = BillingRecordStore(session_factory=session_factory, clock=clock, max_cas_attempts=3)
        await make_org()
        await store.ensure_record('org-1')

        async def always_stale(self):
            raise StaleDataError("concurrent update")

        with patch.object(AsyncSession, 'commit', always_stale):
            with pytest.raises(ConcurrencyConflictError) as exc_info:
                await store.update('org-1', lambda r: {'payment_retry_count': 5})

        assert exc_info.value.attempts == 3
        assert (await store.get('org-1')).payment_retry_count == 0

    @pytest.mark.asyncio
    async def test_missing_record(self, store):
        """Test updating a record that does not exist raises not found."""
        with pytest.raises(BillingRecordNotFoundError):
            await store.update('missing', lambda r: {'payment_retry_count': 1})


class TestSelections:
    """Tests for the scheduler's org selections."""

    async def _billable(self, store, make_org, org_id, day, **changes):
        await make_org(org_id, created_at=_utc(2024, 10, day, 8))
        await store.ensure_record(org_id)
        await store.update(org_id, lambda r: {'default_payment_method_id': f'pm_{org_id}', **changes})

    @pytest.mark.asyncio
    async def test_month_end_anniversaries_due_on_last_day(self, store, make_org):
        """Test orgs on days 28-31 are all due on 28 February of a common year."""
        for day in (15, 27, 28, 30, 31):
            await self._billable(store, make_org, f'org-{day}', day)

        due = await store.select_due_for_refresh(date(2025, 2, 28))

        assert due == ['org-28', 'org-30', 'org-31']

    @pytest.mark.asyncio
    async def test_excludes_unbillable_orgs(self, store, make_org, clock):
        """Test orgs without a payment method, deactivated, past_due or owing a cancel are not refreshed."""
        await self._billable(store, make_org, 'org-ok', 15)
        await self._billable(store, make_org, 'org-past-due', 15, subscription_status=SubscriptionStatus.PAST_DUE)
        await self._billable(store, make_org, 'org-resumed', 15, subscription_status=SubscriptionStatus.CANCELED)
        await make_org('org-no-pm', created_at=_utc(2024, 10, 15, 8))
        await store.ensure_record('org-no-pm')
        await self._billable(store, make_org, 'org-gone', 15)
        await store.transition_org('org-gone', [OrgStatus.ACTIVE], {'status': OrgStatus.DEACTIVATED})
        await self._billable(store, make_org, 'org-canceling', 15, processor_subscription_id='sub_canceling',
                             cancel_requested_at=clock.now())

        due = await store.select_due_for_refresh(date(2025, 3, 15))

        assert due == ['org-ok', 'org-resumed']

    @pytest.mark.asyncio
    async def test_past_due_respects_retry_window(self, store, make_org, clock):
        """Test only past_due orgs whose last failure and retry are before the cutoff are selected."""
        now = clock.now()
        past_due = {'subscription_status': SubscriptionStatus.PAST_DUE}
        await self._billable(store, make_org, 'org-old', 1, last_payment_failure_at=now - timedelta(days=5), **past_due)
        await self._billable(store, make_org, 'org-new', 2, last_payment_failure_at=now - timedelta(days=1), **past_due)
        await self._billable(
            store, make_org, 'org-retried', 3,
            last_payment_failure_at=now - timedelta(days=5),
            last_payment_retry_at=now - timedelta(days=1),
            **past_due,
        )
        await self._billable(store, make_org, 'org-active', 4, last_payment_failure_at=now - timedelta(days=5))

        selected = await store.select_past_due(now - timedelta(days=3))

        assert selected == ['org-old']

    @pytest.mark.asyncio
    async def test_find_org_by_processor_ids(self, store, make_org):
        """Test processor identifiers resolve to their org."""
        await self._billable(store, make_org, 'org-1', 15, processor_customer_id='cus_1', processor_subscription_id='sub_1')

        assert await store.find_org_id(subscription_id='sub_1') == 'org-1'
        assert await store.find_org_id(customer_id='cus_1') == 'org-1'
        assert await store.find_org_id(customer_id='cus_other', subscription_id='sub_other') is None


class TestEventClaims:
    """Tests for webhook deduplication."""

    @pytest.mark.asyncio
    async def test_completed_event_is_not_reclaimed(self, store):
        """Test a completed event id is refused on every redelivery."""
        assert await store.claim_event('evt_1', 'invoice.paid') == (True, 'claimed')
        await store.complete_event('evt_1', 'org-1')

        can_process, reason = await store.claim_event('evt_1', 'invoice.paid')

        assert can_process is False
        assert reason == "Event already processed"
        assert await store.get_event_status('evt_1') == 'completed'

    @pytest.mark.asyncio
    async def test_in_flight_event_is_refused(self, store):
        """Test a concurrent delivery of an event being processed is refused."""
        await store.claim_event('evt_1', 'invoice.paid')

        can_process, _ = await store.claim_event('evt_1', 'invoice.paid')

        assert can_process is False

    @pytest.mark.asyncio
    async def test_failed_event_is_reclaimed(self, store):
        """Test a failed event can be processed again on redelivery."""
        await store.claim_event('evt_1', 'invoice.paid')
        await store.fail_event('evt_1', 'OrgNotResolvedError')

        assert await store.claim_event('evt_1', 'invoice.paid') == (True, 'reclaimed')

    @pytest.mark.asyncio
    async def test_stuck_event_is_reclaimed(self, store, clock):
        """Test an event stuck in processing past the timeout is reclaimed."""
        await store.claim_event('evt_1', 'invoice.paid')
        clock.advance(seconds=301)

        assert await store.claim_event('evt_1', 'invoice.paid') == (True, 'reclaimed')


class TestRunLease:
    """Tests for the per-org run lease."""

    @pytest.mark.asyncio
    async def test_lease_is_exclusive_until_released(self, store, make_org):
        """Test a held lease blocks other runs until released."""
        await make_org()
        await store.ensure_record('org-1')

        token = await store.acquire_run_lease('org-1', ttl_seconds=300)
        assert token is not None
        assert await store.acquire_run_lease('org-1', ttl_seconds=300) is None

        await store.release_run_lease('org-1', token)
        assert await store.acquire_run_lease('org-1', ttl_seconds=300) is not None

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken(self, store, make_org, clock):
        """Test a lease left behind by a crashed run expires."""
        await make_org()
        await store.ensure_record('org-1')
        await store.acquire_run_lease('org-1', ttl_seconds=300)

        clock.advance(seconds=301)

        assert await store.acquire_run_lease('org-1', ttl_seconds=300) is not None

    @pytest.mark.asyncio
    async def test_lease_does_not_bump_version(self, store, make_org):
        """Test taking the lease is not a billing record write."""
        await make_org()
        record = await store.ensure_record('org-1')

        await store.acquire_run_lease('org-1', ttl_seconds=300)

        assert (await store.get('org-1')).version == record.version


class TestOrgsAndAudit:
    """Tests for org reads and the audit log."""

    @pytest.mark.asyncio
    async def test_counts_only_active_students(self, store, make_org):
        """Test archived students are not billed."""
        await make_org(students=4, archived=2)

        assert await store.count_active_students('org-1') == 4

    @pytest.mark.asyncio
    async def test_transition_is_conditional(self, store, make_org):
        """Test an org transition only applies from the expected statuses."""
        await make_org()

        assert await store.transition_org('org-1', [OrgStatus.PAUSED], {'status': OrgStatus.ACTIVE}) is None
        paused = await store.transition_org('org-1', [OrgStatus.ACTIVE], {'status': OrgStatus.PAUSED})

        assert paused.status == OrgStatus.PAUSED

    @pytest.mark.asyncio
    async def test_audit_newest_first(self, store):
        """Test audit entries are listed newest first."""
        await store.append_audit('org-1', 'customer_created', {'customer_id': 'cus_1'})
        await store.append_audit('org-1', 'subscription_created', {'subscription_id': 'sub_1'}, actor='system')

        entries = await store.list_audit('org-1')

        assert [e['action'] for e in entries] == ['subscription_created', 'customer_created']
        assert entries[1]['details'] == {'customer_id': 'cus_1'}
