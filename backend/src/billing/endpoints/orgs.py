"""
Org Billing Endpoints

Admin-facing billing operations for a single school:
payment method collection, lifecycle transitions, login gate checks and
the billing overview.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from backend.src.billing.services import BillingServices
from .dependencies import get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orgs", tags=["billing-orgs"])


class PaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1)
    actor: str = 'admin'


class LifecycleRequest(BaseModel):
    reason: Optional[str] = None
    actor: str = 'admin'


def _org_dict(org) -> Dict:
    return {
        'org_id': org.org_id,
        'status': org.status.value,
        'status_reason': org.status_reason,
        'paused_by': org.paused_by.value if org.paused_by else None,
    }


@router.get("/{org_id}")
async def get_org_billing(org_id: str, services: BillingServices = Depends(get_services)) -> Dict:
    """Billing record, live student count and estimated next charge."""
    overview = await services.orchestrator.describe(org_id)
    overview['audit'] = await services.store.list_audit(org_id, limit=20)
    return overview


@router.post("/{org_id}/setup-intent")
async def create_setup_intent(org_id: str, services: BillingServices = Depends(get_services)) -> Dict:
    """Client secret for collecting a card in the browser."""
    client_secret = await services.orchestrator.create_setup_intent(org_id)
    return {'org_id': org_id, 'client_secret': client_secret}


@router.post("/{org_id}/payment-method")
async def confirm_payment_method(
    org_id: str,
    body: PaymentMethodRequest,
    services: BillingServices = Depends(get_services),
) -> Dict:
    """Store a confirmed payment method and bill straight away."""
    result = await services.orchestrator.confirm_payment_method(org_id, body.payment_method_id, body.actor)
    return result.to_dict()


@router.post("/{org_id}/pause")
async def pause_org(
    org_id: str,
    body: LifecycleRequest,
    services: BillingServices = Depends(get_services),
) -> Dict:
    org = await services.gate.pause(org_id, reason=body.reason or 'admin_pause', actor=body.actor)
    return _org_dict(org)


@router.post("/{org_id}/deactivate")
async def deactivate_org(
    org_id: str,
    body: LifecycleRequest,
    services: BillingServices = Depends(get_services),
) -> Dict:
    org = await services.gate.deactivate(org_id, reason=body.reason or 'admin_deactivation', actor=body.actor)
    return _org_dict(org)


@router.post("/{org_id}/reactivate")
async def reactivate_org(
    org_id: str,
    body: LifecycleRequest,
    services: BillingServices = Depends(get_services),
) -> Dict:
    org = await services.gate.reactivate(org_id, actor=body.actor)
    return _org_dict(org)


@router.get("/{org_id}/access")
async def check_access(
    org_id: str,
    role: str = Query(..., description="Role of the user logging in"),
    services: BillingServices = Depends(get_services),
) -> Dict:
    """Login gate for the authentication layer."""
    decision = await services.gate.check_login(org_id, role)
    return {
        'org_id': org_id,
        'role': role,
        'allowed': decision.allowed,
        'reason': decision.reason.value,
        'detail': decision.detail,
    }
