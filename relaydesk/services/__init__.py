"""Service-layer helpers for domain-specific orchestration."""

from __future__ import annotations

__all__ = [
    "NotificationPreferences",
    "get_preferences",
    "notify",
    "notify_best_effort",
    "save_preferences",
]

from .notification_preferences import NotificationPreferences, get_preferences, save_preferences
from .webhook_notifications import notify, notify_best_effort
