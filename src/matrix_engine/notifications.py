"""Notification sink protocol.

Delivery (email, push, etc.) is external. The engine emits
``(user_id, event_type, payload)`` and never lets a sink failure affect
placement or payouts.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

MATRIX_ENTRY = "matrix_entry"
CYCLE_COMPLETED = "cycle_completed"
DOWNLINE_CYCLED = "downline_cycled"


class NotificationSink(Protocol):
    """Receives engine notifications."""

    async def notify(self, user_id: int, event_type: str, payload: dict[str, Any]) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: writes notifications to the log."""

    async def notify(self, user_id: int, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("Notify user %s: %s %s", user_id, event_type, payload)


async def notify_safely(
    sink: NotificationSink,
    user_id: int,
    event_type: str,
    payload: dict[str, Any],
) -> bool:
    """Call the sink, logging (not raising) any failure.

    Returns True if the sink accepted the notification.
    """
    try:
        await sink.notify(user_id, event_type, payload)
    except Exception:
        logger.exception("Notification sink failed for %s to user %s", event_type, user_id)
        return False
    return True
