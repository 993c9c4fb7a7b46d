from .models import (
    BillingAuditLog,
    Org,
    PlatformBillingSetting,
    PlatformOrgBilling,
    ProcessedWebhookEvent,
    Student,
)
from .repository import BillingRecordStore

__all__ = [
    'BillingAuditLog',
    'Org',
    'PlatformBillingSetting',
    'PlatformOrgBilling',
    'ProcessedWebhookEvent',
    'Student',
    'BillingRecordStore',
]
