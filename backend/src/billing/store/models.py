"""
Billing Store Tables

`orgs` and `students` mirror rows owned by the wider school application;
the billing core only reads them (and flips org status through the
lifecycle gate). Everything else is owned here.
"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, BigInteger, Boolean, Date, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.common.model import MappedBase, UTCDateTime, utcnow


def _uuid_str() -> str:
    return str(uuid.uuid4())


class Org(MappedBase):
    __tablename__ = 'orgs'

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid_str)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default='active', nullable=False)
    status_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paused_by: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    paused_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    billing_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class Student(MappedBase):
    __tablename__ = 'students'

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid_str)
    org_id: Mapped[str] = mapped_column(String(64), ForeignKey('orgs.id'), index=True, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class PlatformOrgBilling(MappedBase):
    __tablename__ = 'platform_org_billing'

    org_id: Mapped[str] = mapped_column(String(64), ForeignKey('orgs.id'), primary_key=True)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    anniversary_day: Mapped[int] = mapped_column(Integer, nullable=False)
    trial_end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    processor_customer_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    processor_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    processor_subscription_item_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    default_payment_method_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    subscription_status: Mapped[str] = mapped_column(String(20), default='trialing', nullable=False)
    status_effective_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    last_billed_student_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_billed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_billed_period: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Failed payment escalation
    payment_failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    first_payment_failure_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_payment_failure_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    payment_retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_payment_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    final_warning_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_failure_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Set while a processor-side cancel is owed but has not gone through
    cancel_requested_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Per-org run lease, written with plain conditional UPDATEs (does not bump version)
    run_lock_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    run_lock_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    # Written by the store from its clock on every versioned update
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    # Optimistic locking configuration
    __mapper_args__ = {'version_id_col': version}

    __table_args__ = (
        Index('ix_platform_org_billing_anniversary_status', 'anniversary_day', 'subscription_status'),
    )


class ProcessedWebhookEvent(MappedBase):
    __tablename__ = 'processed_webhook_events'

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default='processing', nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    org_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class BillingAuditLog(MappedBase):
    __tablename__ = 'billing_audit_log'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), default='system', nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class PlatformBillingSetting(MappedBase):
    __tablename__ = 'platform_billing_settings'

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
