"""Notification gateway that only writes to the log."""

from __future__ import annotations

import logging

from ..contracts import Notification
from .base import BaseNotificationGateway

logger = logging.getLogger(__name__)


class LoggingNotificationGateway(BaseNotificationGateway):
    async def notify(self, notification: Notification) -> None:
        logger.info(
            f"[{notification.category.value}/{notification.priority.value}] "
            f"to={notification.user_id} {notification.title}: {notification.body}"
        )
