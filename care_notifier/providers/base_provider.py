"""
Base Notification Transport.

Abstract base class for the channel that actually shows notifications.
"""

import abc
import logging
import uuid
from datetime import datetime
from typing import Dict, Tuple

from care_notifier.schemas.notification import NotificationContent

logger = logging.getLogger(__name__)


class NotificationTransport(abc.ABC):
    """Abstract base class for notification transports."""

    def __init__(self):
        self.is_initialized = False

    @abc.abstractmethod
    async def request_delivery(self, content: NotificationContent, when: datetime) -> str:
        """
        Ask the transport to show ``content`` at ``when``.

        Args:
            content: Notification title, body, category and data
            when: Delivery instant (naive UTC)

        Returns:
            Transport handle used by later cancels and delivery events

        Raises:
            TransportError: With a failure reason such as "network_error"
        """
        pass

    @abc.abstractmethod
    async def cancel_delivery(self, handle: str) -> None:
        """
        Void a previously requested delivery.

        Args:
            handle: Handle returned by request_delivery
        """
        pass

    async def initialize(self):
        """Initialize the transport (e.g., establish connections)."""
        self.is_initialized = True
        logger.info(f"{self.__class__.__name__} initialized")

    async def cleanup(self):
        """Clean up resources (e.g., close connections)."""
        self.is_initialized = False
        logger.info(f"{self.__class__.__name__} cleaned up")


class LoggingPushTransport(NotificationTransport):
    """Push transport for development: logs requests and keeps them in memory."""

    def __init__(self):
        super().__init__()
        self.pending: Dict[str, Tuple[NotificationContent, datetime]] = {}

    async def request_delivery(self, content: NotificationContent, when: datetime) -> str:
        handle = f"push_{uuid.uuid4().hex}"
        self.pending[handle] = (content, when)
        # In a real implementation, this would hand the payload to the OS scheduler
        logger.info(f"Push notification '{content.title}' scheduled for {when.isoformat()} ({handle})")
        return handle

    async def cancel_delivery(self, handle: str) -> None:
        if self.pending.pop(handle, None) is not None:
            logger.info(f"Push notification {handle} cancelled")
