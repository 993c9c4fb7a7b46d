"""
Billing Record Store

Single owner of persisted billing state. Every write to an org's billing
row is a single-row compare-and-swap on its `version` column; concurrent
writers (scheduler runs, webhooks, admin actions) retry against fresh
data instead of holding locks.

Usage:
    store = BillingRecordStore()
    record = await store.ensure_record(org_id, trial_months=1)

    def mark_active(record):
        return {'subscription_status': SubscriptionStatus.ACTIVE}

    record = await store.update(org_id, mark_active)
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from backend.src.billing.domain.billing_record import (
    OrgBillingRecord,
    OrgSnapshot,
    OrgStatus,
    PausedBy,
    SubscriptionStatus,
)
from backend.src.billing.shared.clock import Clock, SystemClock, add_months, anniversary_days_for
from backend.src.billing.shared.exceptions import BillingRecordNotFoundError, ConcurrencyConflictError
from .models import (
    BillingAuditLog,
    Org,
    PlatformBillingSetting,
    PlatformOrgBilling,
    ProcessedWebhookEvent,
    Student,
)

logger = logging.getLogger(__name__)

Mutation = Callable[[OrgBillingRecord], Optional[Dict[str, Any]]]

# Statuses a scheduled quantity refresh may touch
REFRESHABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)

WEBHOOK_STUCK_SECONDS = 300


def _to_record(row: PlatformOrgBilling) -> OrgBillingRecord:
    return OrgBillingRecord(
        org_id=row.org_id,
        anniversary_day=row.anniversary_day,
        trial_end_date=row.trial_end_date,
        subscription_status=SubscriptionStatus(row.subscription_status),
        status_effective_at=row.status_effective_at,
        processor_customer_id=row.processor_customer_id,
        processor_subscription_id=row.processor_subscription_id,
        processor_subscription_item_id=row.processor_subscription_item_id,
        default_payment_method_id=row.default_payment_method_id,
        last_billed_student_count=row.last_billed_student_count,
        last_billed_at=row.last_billed_at,
        last_billed_period=row.last_billed_period,
        payment_failure_count=row.payment_failure_count,
        first_payment_failure_at=row.first_payment_failure_at,
        last_payment_failure_at=row.last_payment_failure_at,
        payment_retry_count=row.payment_retry_count,
        last_payment_retry_at=row.last_payment_retry_at,
        final_warning_sent=row.final_warning_sent,
        last_failure_event_id=row.last_failure_event_id,
        cancel_requested_at=row.cancel_requested_at,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_snapshot(row: Org) -> OrgSnapshot:
    return OrgSnapshot(
        org_id=row.id,
        name=row.name,
        status=OrgStatus(row.status),
        created_at=row.created_at,
        billing_email=row.billing_email,
        status_reason=row.status_reason,
        paused_by=PausedBy(row.paused_by) if row.paused_by else None,
    )


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class BillingRecordStore:
    """
    Data access for org billing records, webhook dedup, audit and overrides.

    Args:
        session_factory: async_sessionmaker; defaults to the app database
        clock: time source for timestamps written by the store
        max_cas_attempts: compare-and-swap retries before giving up
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Optional[Clock] = None,
        max_cas_attempts: int = 5,
    ):
        self._session_factory = session_factory
        self.clock = clock or SystemClock()
        self.max_cas_attempts = max_cas_attempts

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from backend.database.db import async_db_session
            self._session_factory = async_db_session
        return self._session_factory

    # -------------------------------------------------------------------------
    # Orgs (read mostly)
    # -------------------------------------------------------------------------

    async def get_org(self, org_id: str) -> OrgSnapshot:
        async with self.session_factory() as session:
            row = await session.get(Org, org_id)
            if row is None:
                raise BillingRecordNotFoundError(org_id)
            return _to_snapshot(row)

    async def transition_org(
        self,
        org_id: str,
        from_statuses: Iterable[OrgStatus],
        changes: Dict[str, Any],
    ) -> Optional[OrgSnapshot]:
        """
        Conditionally update the org row.

        Applies `changes` only while the org is in one of `from_statuses`.

        Returns:
            The updated snapshot, or None if the org had moved on.
        """
        values = {k: _column_value(v) for k, v in changes.items()}
        async with self.session_factory() as session:
            result = await session.execute(
                update(Org.__table__)
                .where(
                    Org.__table__.c.id == org_id,
                    Org.__table__.c.status.in_([s.value for s in from_statuses]),
                )
                .values(**values)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
        return await self.get_org(org_id)

    async def count_active_students(self, org_id: str) -> int:
        """Point-in-time count of non-archived students."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(Student.id)).where(
                    Student.org_id == org_id,
                    Student.is_archived.is_(False),
                )
            )
            return int(result.scalar_one())

    # -------------------------------------------------------------------------
    # Billing records
    # -------------------------------------------------------------------------

    async def get(self, org_id: str) -> Optional[OrgBillingRecord]:
        async with self.session_factory() as session:
            row = await session.get(PlatformOrgBilling, org_id)
            return _to_record(row) if row else None

    async def ensure_record(self, org_id: str, trial_months: int = 1) -> OrgBillingRecord:
        """
        Return the org's billing record, creating it on first touch.

        Anniversary day and trial end come from the org's creation date and
        are never rewritten. Safe to call concurrently: a losing insert
        falls back to reading the winner's row.
        """
        existing = await self.get(org_id)
        if existing:
            return existing

        org = await self.get_org(org_id)
        now = self.clock.now()
        async with self.session_factory() as session:
            session.add(PlatformOrgBilling(
                org_id=org_id,
                anniversary_day=org.created_at.day,
                trial_end_date=add_months(org.created_at, trial_months),
                subscription_status=SubscriptionStatus.TRIALING.value,
                status_effective_at=now,
                created_at=now,
                updated_at=now,
            ))
            try:
                await session.commit()
                logger.info(f"[BILLING STORE] Created billing record for org {org_id} "
                            f"(anniversary day {org.created_at.day})")
            except IntegrityError:
                await session.rollback()
                logger.debug(f"[BILLING STORE] Concurrent create for org {org_id}, using existing row")

        record = await self.get(org_id)
        if record is None:
            raise BillingRecordNotFoundError(org_id)
        return record

    async def update(self, org_id: str, mutate: Mutation) -> OrgBillingRecord:
        """
        Compare-and-swap update of one billing record.

        `mutate` receives the freshly loaded record and returns the fields
        to change (or None/{} for no change). It is re-run on every retry,
        so it must be free of side effects.

        Raises:
            BillingRecordNotFoundError: no record for org_id
            ConcurrencyConflictError: lost the race max_cas_attempts times
        """
        for attempt in range(1, self.max_cas_attempts + 1):
            async with self.session_factory() as session:
                row = await session.get(PlatformOrgBilling, org_id)
                if row is None:
                    raise BillingRecordNotFoundError(org_id)

                record = _to_record(row)
                changes = record.diff(mutate(record) or {})
                if not changes:
                    return record

                for key, value in changes.items():
                    setattr(row, key, _column_value(value))
                row.updated_at = self.clock.now()
                try:
                    await session.commit()
                except StaleDataError:
                    await session.rollback()
                    logger.info(f"[BILLING STORE] Version conflict on org {org_id} "
                                f"(attempt {attempt}/{self.max_cas_attempts}), retrying")
                    continue
                return _to_record(row)

        raise ConcurrencyConflictError(org_id, self.max_cas_attempts)

    # -------------------------------------------------------------------------
    # Run lease (per-org serialization across processes)
    # -------------------------------------------------------------------------

    async def acquire_run_lease(self, org_id: str, ttl_seconds: int) -> Optional[str]:
        """Claim the org's run lease. Returns a token, or None while another run holds it."""
        table = PlatformOrgBilling.__table__
        now = self.clock.now()
        token = uuid.uuid4().hex
        async with self.session_factory() as session:
            result = await session.execute(
                update(table)
                .where(
                    table.c.org_id == org_id,
                    or_(table.c.run_lock_expires_at.is_(None), table.c.run_lock_expires_at < now),
                )
                .values(
                    run_lock_token=token,
                    run_lock_expires_at=now + timedelta(seconds=ttl_seconds),
                )
            )
            await session.commit()
        return token if result.rowcount == 1 else None

    async def release_run_lease(self, org_id: str, token: str) -> None:
        table = PlatformOrgBilling.__table__
        async with self.session_factory() as session:
            await session.execute(
                update(table)
                .where(table.c.org_id == org_id, table.c.run_lock_token == token)
                .values(run_lock_token=None, run_lock_expires_at=None)
            )
            await session.commit()

    # -------------------------------------------------------------------------
    # Scheduler selections
    # -------------------------------------------------------------------------

    async def select_due_for_refresh(self, tomorrow: date) -> List[str]:
        """
        Orgs whose (month-end clamped) anniversary is `tomorrow`.

        Requires a payment method and an operable org. Canceled records
        without a live subscription are included so an org that resumed
        gets a new subscription on its next cycle; records still owing a
        processor-side cancel are not.
        """
        record = PlatformOrgBilling
        async with self.session_factory() as session:
            result = await session.execute(
                select(record.org_id)
                .join(Org, Org.id == record.org_id)
                .where(
                    record.anniversary_day.in_(sorted(anniversary_days_for(tomorrow))),
                    record.default_payment_method_id.is_not(None),
                    record.cancel_requested_at.is_(None),
                    Org.status != OrgStatus.DEACTIVATED.value,
                    or_(
                        record.subscription_status.in_(REFRESHABLE_STATUSES),
                        and_(
                            record.subscription_status == SubscriptionStatus.CANCELED.value,
                            record.processor_subscription_id.is_(None),
                        ),
                    ),
                )
                .order_by(record.org_id)
            )
            return list(result.scalars().all())

    async def select_past_due(self, cutoff: datetime) -> List[str]:
        """past_due orgs whose last failure and last retry are both at or before `cutoff`."""
        record = PlatformOrgBilling
        async with self.session_factory() as session:
            result = await session.execute(
                select(record.org_id)
                .join(Org, Org.id == record.org_id)
                .where(
                    record.subscription_status == SubscriptionStatus.PAST_DUE.value,
                    Org.status != OrgStatus.DEACTIVATED.value,
                    or_(
                        record.last_payment_failure_at <= cutoff,
                        and_(
                            record.last_payment_failure_at.is_(None),
                            record.status_effective_at <= cutoff,
                        ),
                    ),
                    or_(record.last_payment_retry_at.is_(None), record.last_payment_retry_at <= cutoff),
                )
                .order_by(record.org_id)
            )
            return list(result.scalars().all())

    async def select_pending_cancel(self) -> List[str]:
        """Orgs whose deactivation could not cancel the processor subscription yet."""
        record = PlatformOrgBilling
        async with self.session_factory() as session:
            result = await session.execute(
                select(record.org_id)
                .where(record.cancel_requested_at.is_not(None))
                .order_by(record.org_id)
            )
            return list(result.scalars().all())

    async def find_org_id(
        self,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Optional[str]:
        """Resolve a processor identifier to an org (subscription id first)."""
        async with self.session_factory() as session:
            if subscription_id:
                result = await session.execute(
                    select(PlatformOrgBilling.org_id)
                    .where(PlatformOrgBilling.processor_subscription_id == subscription_id)
                )
                org_id = result.scalar_one_or_none()
                if org_id:
                    return org_id
            if customer_id:
                result = await session.execute(
                    select(PlatformOrgBilling.org_id)
                    .where(PlatformOrgBilling.processor_customer_id == customer_id)
                )
                return result.scalar_one_or_none()
        return None

    # -------------------------------------------------------------------------
    # Webhook deduplication
    # -------------------------------------------------------------------------

    async def claim_event(
        self,
        event_id: str,
        event_type: str,
        stuck_after_seconds: int = WEBHOOK_STUCK_SECONDS,
    ) -> Tuple[bool, str]:
        """
        Claim a processor event for processing.

        Returns:
            Tuple of (can_process, reason). Completed events and events
            claimed less than `stuck_after_seconds` ago are refused; failed
            and stuck events are reclaimed.
        """
        table = ProcessedWebhookEvent.__table__
        now = self.clock.now()
        async with self.session_factory() as session:
            existing = await session.get(ProcessedWebhookEvent, event_id)

            if existing is None:
                session.add(ProcessedWebhookEvent(
                    id=event_id,
                    event_type=event_type,
                    status='processing',
                    attempts=1,
                    created_at=now,
                    claimed_at=now,
                ))
                try:
                    await session.commit()
                    return True, "claimed"
                except IntegrityError:
                    await session.rollback()
                    return False, "Event currently being processed"

            if existing.status == 'completed':
                return False, "Event already processed"

            if existing.status == 'processing':
                age = (now - existing.claimed_at).total_seconds()
                if age < stuck_after_seconds:
                    return False, "Event currently being processed"
                logger.warning(f"[WEBHOOK LOCK] Event {event_id} stuck in processing, allowing retry")
            else:
                logger.info(f"[WEBHOOK LOCK] Retrying failed event {event_id}")

            result = await session.execute(
                update(table)
                .where(table.c.id == event_id, table.c.attempts == existing.attempts)
                .values(
                    status='processing',
                    attempts=existing.attempts + 1,
                    claimed_at=now,
                    error_message=None,
                )
            )
            await session.commit()
            if result.rowcount != 1:
                return False, "Event currently being processed"
            return True, "reclaimed"

    async def complete_event(self, event_id: str, org_id: Optional[str] = None) -> None:
        table = ProcessedWebhookEvent.__table__
        async with self.session_factory() as session:
            await session.execute(
                update(table)
                .where(table.c.id == event_id)
                .values(status='completed', org_id=org_id, completed_at=self.clock.now())
            )
            await session.commit()

    async def fail_event(self, event_id: str, error_message: str) -> None:
        table = ProcessedWebhookEvent.__table__
        async with self.session_factory() as session:
            await session.execute(
                update(table)
                .where(table.c.id == event_id)
                .values(status='failed', error_message=error_message[:1000])
            )
            await session.commit()

    async def get_event_status(self, event_id: str) -> Optional[str]:
        async with self.session_factory() as session:
            row = await session.get(ProcessedWebhookEvent, event_id)
            return row.status if row else None

    # -------------------------------------------------------------------------
    # Audit log and platform overrides
    # -------------------------------------------------------------------------

    async def append_audit(
        self,
        org_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        actor: str = 'system',
    ) -> None:
        async with self.session_factory() as session:
            session.add(BillingAuditLog(
                org_id=org_id,
                action=action,
                actor=actor,
                details=details or {},
                created_at=self.clock.now(),
            ))
            await session.commit()

    async def list_audit(self, org_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingAuditLog)
                .where(BillingAuditLog.org_id == org_id)
                .order_by(BillingAuditLog.id.desc())
                .limit(limit)
            )
            return [
                {
                    'action': row.action,
                    'actor': row.actor,
                    'details': row.details,
                    'created_at': row.created_at.isoformat(),
                }
                for row in result.scalars().all()
            ]

    async def load_overrides(self) -> Dict[str, str]:
        async with self.session_factory() as session:
            result = await session.execute(select(PlatformBillingSetting))
            return {row.key: row.value for row in result.scalars().all()}
