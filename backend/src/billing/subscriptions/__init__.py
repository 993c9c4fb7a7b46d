"""
Subscriptions Module

Components:
- BillingOrchestrator: per-org customer, quantity and subscription sync
- SubscriptionReconciler: webhook-driven status and escalation
- PaymentEscalationService: retries, pause and deactivation for past_due orgs
- AnniversaryScheduler: the daily batch

Usage:
    from backend.src.billing.subscriptions import BillingOrchestrator

    result = await BillingOrchestrator(store, gateway, config_provider).run(org_id)
"""

from .escalation import EscalationResult, PaymentEscalationService
from .orchestrator import BillingOrchestrator, OrchestratorOutcome, OrchestratorResult
from .reconciler import ReconcileResult, ReconcileStatus, SubscriptionReconciler
from .scheduler import AnniversaryScheduler, BatchItem, BatchResult, BatchStatus

__all__ = [
    'EscalationResult',
    'PaymentEscalationService',
    'BillingOrchestrator',
    'OrchestratorOutcome',
    'OrchestratorResult',
    'ReconcileResult',
    'ReconcileStatus',
    'SubscriptionReconciler',
    'AnniversaryScheduler',
    'BatchItem',
    'BatchResult',
    'BatchStatus',
]
