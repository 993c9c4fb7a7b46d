"""
Notification Dispatcher

Sends billing emails through a transactional email HTTP API. Template
rendering belongs to that service; this module only picks the template
kind and supplies the data.

Delivery failures are logged and reported as a failed result. They never
raise into the billing code that triggered them, so a lost email never
rolls back a billing state change.

Usage:
    dispatcher = get_notification_dispatcher()
    result = await dispatcher.send("bursar@school.org", NotificationKind.BILLING_SUCCESS, {...})
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from backend.core.conf import settings
from backend.src.billing.domain.billing_record import OrgSnapshot

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    BILLING_SUCCESS = "billing_success"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_FAILED_FINAL_WARNING = "payment_failed_final_warning"


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    kind: NotificationKind
    recipient: Optional[str] = None
    error: Optional[str] = None


class NotificationDispatcher(ABC):
    """send(recipient, kind, data) -> success|failure."""

    @abstractmethod
    async def send(self, recipient: str, kind: NotificationKind, data: Dict[str, Any]) -> NotificationResult:
        pass

    async def notify_org(
        self,
        org: OrgSnapshot,
        kind: NotificationKind,
        data: Optional[Dict[str, Any]] = None,
    ) -> NotificationResult:
        """Send `kind` to the org's billing contact, adding the common template fields."""
        if not org.billing_email:
            logger.warning(f"[NOTIFY] Org {org.org_id} has no billing email, skipping {kind.value}")
            return NotificationResult(success=False, kind=kind, error="no_recipient")

        payload = {
            'org_id': org.org_id,
            'org_name': org.name,
            'billing_url': f"{settings.APP_BASE_URL}/settings/billing",
            **(data or {}),
        }
        try:
            return await self.send(org.billing_email, kind, payload)
        except Exception as e:
            logger.error(f"[NOTIFY] {kind.value} to org {org.org_id} failed: {e}", exc_info=True)
            return NotificationResult(success=False, kind=kind, recipient=org.billing_email, error=str(e))


class HttpNotificationDispatcher(NotificationDispatcher):
    """
    Posts `{from, to, template, data}` to the configured email API.

    Args:
        api_url: Email API endpoint
        api_key: Bearer token for the email API
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        api_url: str = None,
        api_key: str = None,
        sender: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url or settings.NOTIFICATION_API_URL
        self.api_key = api_key or settings.NOTIFICATION_API_KEY
        self.sender = sender or settings.NOTIFICATION_FROM_EMAIL
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT
        self._transport = transport

    async def send(self, recipient: str, kind: NotificationKind, data: Dict[str, Any]) -> NotificationResult:
        request_data = {
            'from': self.sender,
            'to': recipient,
            'template': kind.value,
            'data': data,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.api_url,
                    json=request_data,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
        except httpx.TimeoutException:
            logger.error(f"[NOTIFY] Timeout sending {kind.value} to {recipient}")
            return NotificationResult(success=False, kind=kind, recipient=recipient, error="timeout")
        except httpx.HTTPError as e:
            logger.error(f"[NOTIFY] Failed sending {kind.value} to {recipient}: {e}")
            return NotificationResult(success=False, kind=kind, recipient=recipient, error=str(e))

        logger.info(f"[NOTIFY] Sent {kind.value} to {recipient}")
        return NotificationResult(success=True, kind=kind, recipient=recipient)


class LogOnlyNotificationDispatcher(NotificationDispatcher):
    """Development sender used while NOTIFICATION_API_URL is unset."""

    async def send(self, recipient: str, kind: NotificationKind, data: Dict[str, Any]) -> NotificationResult:
        logger.warning(f"[NOTIFY] NOTIFICATION_API_URL not set, not delivering {kind.value} to {recipient}")
        return NotificationResult(success=False, kind=kind, recipient=recipient, error="not_configured")


def get_notification_dispatcher() -> NotificationDispatcher:
    if settings.NOTIFICATION_API_URL:
        return HttpNotificationDispatcher()
    return LogOnlyNotificationDispatcher()
