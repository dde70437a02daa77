"""In-memory notification gateway for testing."""

from __future__ import annotations

import asyncio
from typing import List

from ..contracts import Notification, NotificationCategory
from ..errors import DeliveryError
from .base import BaseNotificationGateway


class InMemoryNotificationGateway(BaseNotificationGateway):
    """Keeps delivered notifications in a list.

    ``fail_times`` makes the next N deliveries raise ``DeliveryError``.
    """

    def __init__(self, fail_times: int = 0) -> None:
        self.delivered: List[Notification] = []
        self.attempts = 0
        self.fail_times = fail_times
        self._lock = asyncio.Lock()

    async def notify(self, notification: Notification) -> None:
        async with self._lock:
            self.attempts += 1
            if self.fail_times > 0:
                self.fail_times -= 1
                raise DeliveryError(f"Injected delivery failure for {notification.user_id}")
            self.delivered.append(notification)

    def for_user(self, user_id: str) -> List[Notification]:
        return [n for n in self.delivered if n.user_id == user_id]

    def by_category(self, category: NotificationCategory) -> List[Notification]:
        return [n for n in self.delivered if n.category == category]
