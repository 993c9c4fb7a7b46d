"""Billing email notifications."""

from .dispatcher import (
    HttpNotificationDispatcher,
    LogOnlyNotificationDispatcher,
    NotificationDispatcher,
    NotificationKind,
    NotificationResult,
    get_notification_dispatcher,
)

__all__ = [
    'HttpNotificationDispatcher',
    'LogOnlyNotificationDispatcher',
    'NotificationDispatcher',
    'NotificationKind',
    'NotificationResult',
    'get_notification_dispatcher',
]
