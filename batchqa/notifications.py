from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

logger = logging.getLogger(__name__)

BATCH_SUBMITTED = "BATCH_SUBMITTED"
BATCH_APPROVED = "BATCH_APPROVED"
BATCH_REJECTED = "BATCH_REJECTED"
NOTIFICATION_TYPES = frozenset({BATCH_SUBMITTED, BATCH_APPROVED, BATCH_REJECTED})


class NotificationSink(Protocol):
    def notify(
        self,
        *,
        user_id: str,
        batch_id: str,
        message: str,
        notification_type: str,
    ) -> None: ...


class NotificationsRepository(Protocol):
    def append(self, *, notification: dict[str, Any]) -> dict[str, Any]: ...


class RepositoryNotificationSink:
    """Persist one inbox row per notification."""

    def __init__(self, repository: NotificationsRepository) -> None:
        self._repository = repository

    def notify(
        self,
        *,
        user_id: str,
        batch_id: str,
        message: str,
        notification_type: str,
    ) -> None:
        if notification_type not in NOTIFICATION_TYPES:
            raise ValueError(f"unknown notification type: {notification_type}")
        self._repository.append(
            notification={
                "notification_id": f"ntf_{uuid.uuid4().hex[:12]}",
                "user_id": user_id,
                "batch_id": batch_id,
                "message": message,
                "type": notification_type,
                "is_read": False,
                "created_at": datetime.now(UTC).isoformat(),
            }
        )
        logger.info(
            "notification_sent type=%s user_id=%s batch_id=%s",
            notification_type,
            user_id,
            batch_id,
        )
