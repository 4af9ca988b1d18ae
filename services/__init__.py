"""
Service layer for the Bilibili notifier.

This package contains content filtering, message formatting and
notification dispatch. The orchestrator lives in ``services.notify_service``.
"""

from .filter import check_dynamic_filter, check_live_filter
from .formatter import NotificationFormatter
from .notifier import Notification, NotificationDispatcher, OutgoingMessage

__all__ = [
    "check_dynamic_filter",
    "check_live_filter",
    "NotificationFormatter",
    "Notification",
    "NotificationDispatcher",
    "OutgoingMessage",
]
