"""Redis notification gateway for cross-process delivery."""

from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as redis

from ..constants import REDIS_NOTIFICATION_PREFIX
from ..contracts import Notification
from ..errors import DeliveryError
from .base import BaseNotificationGateway


class RedisNotificationGateway(BaseNotificationGateway):
    """Push notifications onto a per-user Redis list.

    A push worker owned by the delivery service pops from
    ``signoff:notifications:<user_id>``.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def queue_name(user_id: str) -> str:
        return f"{REDIS_NOTIFICATION_PREFIX}:{user_id}"

    async def notify(self, notification: Notification) -> None:
        try:
            if not self._redis:
                await self.connect()
            await self._redis.lpush(
                self.queue_name(notification.user_id), notification.to_json()
            )
        except redis.RedisError as exc:
            raise DeliveryError(f"Redis delivery failed: {exc}") from exc
