"""Notification gateway factory and best-effort delivery."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import SignoffConfig, load_config
from ..contracts import Notification
from ..utils.retry import schedule_retry
from .base import BaseNotificationGateway
from .inmemory import InMemoryNotificationGateway
from .log import LoggingNotificationGateway

logger = logging.getLogger(__name__)


def get_gateway(
    backend: Optional[str] = None, config: Optional[SignoffConfig] = None
) -> BaseNotificationGateway:
    """Factory function to get the configured notification gateway."""

    config = config or load_config()
    backend = (
        backend or os.getenv("SIGNOFF_NOTIFICATIONS") or config.notifications.backend
    ).lower()

    if backend == "log":
        return LoggingNotificationGateway()
    elif backend == "inmemory":
        return InMemoryNotificationGateway()
    elif backend == "redis":
        from .redis import RedisNotificationGateway

        redis_conf = config.notifications.redis
        return RedisNotificationGateway(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported notification backend: {backend}")


async def deliver(
    gateway: BaseNotificationGateway,
    notification: Notification,
    attempts: int = 1,
    backoff_base: float = 0.0,
) -> bool:
    """Deliver ``notification`` with bounded retries.

    Never raises for delivery problems: the state change that produced the
    notification has already been committed. Returns ``True`` on success.
    """
    for attempt in range(1, attempts + 1):
        try:
            await gateway.notify(notification)
            return True
        except Exception as exc:  # noqa: BLE001
            if attempt >= attempts:
                logger.error(
                    f"Failed to deliver {notification.category.value} notification "
                    f"to {notification.user_id} after {attempts} attempt(s): {exc}",
                    exc_info=True,
                )
                return False
            logger.warning(
                f"Delivery to {notification.user_id} failed (attempt {attempt}/{attempts}): {exc}"
            )
            await schedule_retry(attempt, base=backoff_base)
    return False


__all__ = [
    "BaseNotificationGateway",
    "InMemoryNotificationGateway",
    "LoggingNotificationGateway",
    "deliver",
    "get_gateway",
]
