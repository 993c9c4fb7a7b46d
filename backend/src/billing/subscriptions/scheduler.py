"""
Anniversary Scheduler

Once-a-day batch:

1. Quantity refresh for orgs whose (month-end clamped) anniversary is
   tomorrow, so Stripe's automatic charge uses today's student count.
2. Escalation for past_due orgs whose last failure is older than the
   retry window.

3. Cancel retry for deactivated orgs whose processor subscription could
   not be canceled at deactivation.

Orgs are processed concurrently up to `batch_concurrency`; one org's
failure never stops the others. Re-running the same day is safe because
every per-org step is idempotent.

Usage:
    result = await scheduler.run_daily()
    print(result.status)   # success | partial_failure | failure
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend.src.billing.domain.billing_record import estimate_amount
from backend.src.billing.shared.clock import Clock, SystemClock
from backend.src.billing.shared.config import BillingConfigProvider
from backend.src.billing.shared.exceptions import BillingError, ConfigurationError, TransientGatewayError
from backend.src.billing.store.repository import BillingRecordStore
from .escalation import PaymentEscalationService
from .orchestrator import BillingOrchestrator

logger = logging.getLogger(__name__)

PHASE_REFRESH = 'refresh'
PHASE_ESCALATION = 'escalation'
PHASE_CANCEL = 'cancel'


class BatchStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


@dataclass
class BatchItem:
    org_id: str
    phase: str
    ok: bool
    outcome: Optional[str] = None
    error: Optional[Dict[str, Any]] = None


@dataclass
class BatchResult:
    run_date: date
    started_at: datetime
    finished_at: Optional[datetime] = None
    items: List[BatchItem] = field(default_factory=list)

    @property
    def failed(self) -> List[BatchItem]:
        return [item for item in self.items if not item.ok]

    @property
    def status(self) -> BatchStatus:
        if not self.failed:
            return BatchStatus.SUCCESS
        if len(self.failed) == len(self.items):
            return BatchStatus.FAILURE
        return BatchStatus.PARTIAL_FAILURE

    @property
    def exit_code(self) -> int:
        return {BatchStatus.SUCCESS: 0, BatchStatus.FAILURE: 1, BatchStatus.PARTIAL_FAILURE: 2}[self.status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_date': self.run_date.isoformat(),
            'status': self.status.value,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'processed': len(self.items),
            'failed': len(self.failed),
            'items': [
                {
                    'org_id': item.org_id,
                    'phase': item.phase,
                    'ok': item.ok,
                    'outcome': item.outcome,
                    'error': item.error,
                }
                for item in self.items
            ],
        }


class AnniversaryScheduler:
    """
    Daily billing batch.

    Args:
        store: Billing record store (selections)
        orchestrator: Per-org quantity refresh
        escalation: Per-org past_due handling
        config_provider: Billing policy; refreshed once at the start of a run
        clock: Defines "today"
    """

    def __init__(
        self,
        store: BillingRecordStore,
        orchestrator: BillingOrchestrator,
        escalation: PaymentEscalationService,
        config_provider: BillingConfigProvider,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.escalation = escalation
        self.config_provider = config_provider
        self.clock = clock or SystemClock()

    async def run_daily(self) -> BatchResult:
        config = await self.config_provider.refresh()
        today = self.clock.today()
        tomorrow = today + timedelta(days=1)
        result = BatchResult(run_date=today, started_at=self.clock.now())

        refresh_ids = await self.store.select_due_for_refresh(tomorrow)
        past_due_ids = await self.store.select_past_due(
            self.clock.now() - timedelta(days=config.retry_interval_days)
        )
        cancel_ids = await self.store.select_pending_cancel()
        logger.info(f"[SCHEDULER] {today}: {len(refresh_ids)} org(s) due for refresh "
                    f"(anniversary {tomorrow}), {len(past_due_ids)} past_due org(s) for escalation, "
                    f"{len(cancel_ids)} pending cancel(s)")

        semaphore = asyncio.Semaphore(config.batch_concurrency)

        async def refresh(org_id: str) -> str:
            outcome = await self.orchestrator.run(org_id, config)
            return outcome.outcome.value

        async def escalate(org_id: str) -> str:
            outcome = await self.escalation.process(org_id, config)
            return outcome.outcome

        tasks = [self._guarded(semaphore, PHASE_REFRESH, org_id, refresh) for org_id in refresh_ids]
        tasks += [self._guarded(semaphore, PHASE_ESCALATION, org_id, escalate) for org_id in past_due_ids]
        tasks += [self._guarded(semaphore, PHASE_CANCEL, org_id, escalate) for org_id in cancel_ids]
        result.items = list(await asyncio.gather(*tasks))
        result.finished_at = self.clock.now()

        log = logger.info if result.status == BatchStatus.SUCCESS else logger.error
        log(f"[SCHEDULER] {today} finished: {result.status.value} "
            f"({len(result.items) - len(result.failed)} ok, {len(result.failed)} failed)")
        return result

    async def _guarded(
        self,
        semaphore: asyncio.Semaphore,
        phase: str,
        org_id: str,
        step: Callable[[str], Awaitable[str]],
    ) -> BatchItem:
        async with semaphore:
            try:
                outcome = await step(org_id)
                return BatchItem(org_id=org_id, phase=phase, ok=True, outcome=outcome)
            except ConfigurationError as e:
                logger.error(f"[ALERT] {phase} skipped for org {org_id}: {e.message}")
                return BatchItem(org_id=org_id, phase=phase, ok=False, error=e.to_dict())
            except TransientGatewayError as e:
                logger.warning(f"[SCHEDULER] {phase} for org {org_id} deferred to next run: {e.message}")
                return BatchItem(org_id=org_id, phase=phase, ok=False, error=e.to_dict())
            except BillingError as e:
                logger.error(f"[SCHEDULER] {phase} failed for org {org_id}: {e.message}")
                return BatchItem(org_id=org_id, phase=phase, ok=False, error=e.to_dict())
            except Exception as e:
                logger.error(f"[SCHEDULER] Unexpected error in {phase} for org {org_id}: {e}", exc_info=True)
                return BatchItem(
                    org_id=org_id,
                    phase=phase,
                    ok=False,
                    error={'error': type(e).__name__, 'message': str(e)},
                )

    async def preview(self) -> Dict[str, Any]:
        """What `run_daily` would touch today, without calling the processor."""
        config = await self.config_provider.get()
        today = self.clock.today()
        tomorrow = today + timedelta(days=1)

        refresh = []
        for org_id in await self.store.select_due_for_refresh(tomorrow):
            record = await self.store.get(org_id)
            student_count = await self.store.count_active_students(org_id)
            refresh.append({
                'org_id': org_id,
                'anniversary_day': record.anniversary_day,
                'subscription_status': record.subscription_status.value,
                'has_subscription': record.has_subscription(),
                'last_billed_student_count': record.last_billed_student_count,
                'active_students': student_count,
                'estimated_amount': estimate_amount(student_count, config.price_per_student),
            })

        past_due = []
        for org_id in await self.store.select_past_due(self.clock.now() - timedelta(days=config.retry_interval_days)):
            record = await self.store.get(org_id)
            past_due.append({
                'org_id': org_id,
                'payment_failure_count': record.payment_failure_count,
                'payment_retry_count': record.payment_retry_count,
                'first_payment_failure_at': (
                    record.first_payment_failure_at.isoformat() if record.first_payment_failure_at else None
                ),
            })

        return {
            'run_date': today.isoformat(),
            'anniversary_date': tomorrow.isoformat(),
            'currency': config.currency,
            'refresh': refresh,
            'past_due': past_due,
            'pending_cancel': await self.store.select_pending_cancel(),
        }
