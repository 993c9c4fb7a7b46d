"""Shared fixtures for the billing test suite.

Every test gets its own in-memory SQLite database, a fake payment
processor gateway, a recording notifier and a clock pinned to
2025-03-14 02:00 UTC (the daily batch hour).
"""

import os

os.environ.setdefault('DATABASE_TYPE', 'sqlite')
os.environ.setdefault('STRIPE_SECRET_KEY', 'sk_test_dummy')
os.environ.setdefault('STRIPE_PRICE_ID', 'price_test_student')
os.environ.setdefault('BILLING_CRON_ENABLED', 'false')

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from backend.database.db import create_tables
from backend.src.billing.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationKind,
    NotificationResult,
)
from backend.src.billing.payments.interfaces import (
    InvoicePaymentResult,
    PaymentProcessorGateway,
    SubscriptionResult,
)
from backend.src.billing.services import build_billing_services
from backend.src.billing.shared.clock import FixedClock
from backend.src.billing.shared.config import BillingConfig
from backend.src.billing.store.models import Org, Student

NOW = datetime(2025, 3, 14, 2, 0, tzinfo=timezone.utc)
# Anniversary day 15, so the default org is due for refresh on NOW
ORG_CREATED_AT = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


class FakeGateway(PaymentProcessorGateway):
    """
    In-memory processor.

    `errors` maps a method name, or (method name, org/subscription id), to
    an exception raised by that call. Every call is recorded in `calls`.
    """

    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.errors: Dict[Any, Exception] = {}
        self.subscription_status = 'trialing'
        self.invoice_result: Optional[InvoicePaymentResult] = None

    def _record(self, name: str, key: Optional[str] = None, **kwargs) -> None:
        self.calls.append((name, kwargs))
        error = self.errors.get((name, key)) or self.errors.get(name)
        if error is not None:
            raise error

    def calls_to(self, name: str) -> List[Dict[str, Any]]:
        return [kwargs for call, kwargs in self.calls if call == name]

    async def ensure_customer(self, org_id, org_name, email=None):
        self._record('ensure_customer', org_id, org_id=org_id, org_name=org_name, email=email)
        return f'cus_{org_id}'

    async def create_subscription(self, org_id, customer_id, quantity, trial_end, payment_method_id, idempotency_scope):
        self._record(
            'create_subscription',
            org_id,
            org_id=org_id,
            customer_id=customer_id,
            quantity=quantity,
            trial_end=trial_end,
            payment_method_id=payment_method_id,
            idempotency_scope=idempotency_scope,
        )
        return SubscriptionResult(f'sub_{org_id}', f'si_{org_id}', self.subscription_status)

    async def update_subscription_quantity(self, subscription_id, subscription_item_id, quantity, idempotency_scope):
        self._record(
            'update_subscription_quantity',
            subscription_id,
            subscription_id=subscription_id,
            subscription_item_id=subscription_item_id,
            quantity=quantity,
            idempotency_scope=idempotency_scope,
        )
        return SubscriptionResult(subscription_id, subscription_item_id, self.subscription_status)

    async def cancel_subscription(self, subscription_id):
        self._record('cancel_subscription', subscription_id, subscription_id=subscription_id)

    async def attach_payment_method(self, customer_id, payment_method_id, subscription_id=None):
        self._record(
            'attach_payment_method',
            customer_id,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            subscription_id=subscription_id,
        )

    async def create_setup_intent(self, org_id, customer_id):
        self._record('create_setup_intent', org_id, org_id=org_id, customer_id=customer_id)
        return f'seti_{org_id}_secret'

    async def pay_open_invoice(self, customer_id, subscription_id, payment_method_id, idempotency_scope):
        self._record(
            'pay_open_invoice',
            customer_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            payment_method_id=payment_method_id,
            idempotency_scope=idempotency_scope,
        )
        return self.invoice_result


class RecordingNotifier(NotificationDispatcher):
    def __init__(self):
        self.sent: List[Tuple[str, NotificationKind, Dict[str, Any]]] = []

    async def send(self, recipient, kind, data):
        self.sent.append((recipient, kind, data))
        return NotificationResult(success=True, kind=kind, recipient=recipient)

    def kinds(self) -> List[NotificationKind]:
        return [kind for _, kind, _ in self.sent]


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config():
    # One org at a time: every session shares the single in-memory connection
    return BillingConfig(price_id='price_test_student', batch_concurrency=1)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        'sqlite+aiosqlite://',
        poolclass=StaticPool,
        connect_args={'check_same_thread': False},
    )
    await create_tables(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def services(session_factory, gateway, notifier, clock, config):
    return build_billing_services(
        session_factory=session_factory,
        gateway=gateway,
        notifier=notifier,
        clock=clock,
        config=config,
    )


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def make_org(session_factory):
    """Insert an org with `students` active and `archived` archived students."""

    async def _make(
        org_id: str = 'org-1',
        name: str = 'Oakwood Primary',
        created_at: Optional[datetime] = None,
        students: int = 3,
        archived: int = 0,
        status: str = 'active',
        billing_email: Optional[str] = 'bursar@oakwood.example',
    ) -> str:
        async with session_factory() as session:
            session.add(Org(
                id=org_id,
                name=name,
                status=status,
                billing_email=billing_email,
                created_at=created_at or ORG_CREATED_AT,
            ))
            await session.commit()
        await add_students(session_factory, org_id, students, archived)
        return org_id

    return _make


async def add_students(session_factory, org_id: str, count: int, archived: int = 0) -> None:
    async with session_factory() as session:
        for _ in range(count):
            session.add(Student(org_id=org_id, is_archived=False))
        for _ in range(archived):
            session.add(Student(org_id=org_id, is_archived=True))
        await session.commit()


@pytest.fixture
def students(session_factory):
    async def _add(org_id: str, count: int, archived: int = 0) -> None:
        await add_students(session_factory, org_id, count, archived)

    return _add
