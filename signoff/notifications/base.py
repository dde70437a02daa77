"""Base notification gateway interface."""

from __future__ import annotations

import abc

from ..contracts import Notification


class BaseNotificationGateway(metaclass=abc.ABCMeta):
    """Abstract delivery channel for user-visible alerts."""

    async def connect(self) -> None:
        """Open connection to the channel (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the channel (no-op by default)."""
        pass

    @abc.abstractmethod
    async def notify(self, notification: Notification) -> None:
        """Deliver one notification.

        Raises:
            DeliveryError: If the channel rejected or could not take the
                notification.
        """
        raise NotImplementedError
