"""
Notification sinks for user-facing feedback.

Sinks are fire-and-forget: components call success/error/info and
never wait on, or fail because of, delivery.
"""

import abc
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    """Severity of a user notification."""
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


@dataclass
class Notification:
    """A single transient message shown to the user."""
    level: NotificationLevel
    message: str
    timestamp: float = field(default_factory=time.time)


class BaseNotifier(abc.ABC):
    """Abstract base class for all notification sinks."""

    @abc.abstractmethod
    def deliver(self, notification: Notification) -> None:
        """Hand a notification to the sink."""
        pass

    def notify(self, level: NotificationLevel, message: str) -> None:
        try:
            self.deliver(Notification(level=level, message=message))
        except Exception as e:
            logger.error(f"Notifier {type(self).__name__} failed: {e}")

    def success(self, message: str) -> None:
        self.notify(NotificationLevel.SUCCESS, message)

    def error(self, message: str) -> None:
        self.notify(NotificationLevel.ERROR, message)

    def info(self, message: str) -> None:
        self.notify(NotificationLevel.INFO, message)


class LogNotifier(BaseNotifier):
    """
    Writes notifications to the logger.

    Useful for development and headless clients.
    """

    def deliver(self, notification: Notification) -> None:
        log_msg = f"[{notification.level.value.upper()}] {notification.message}"

        if notification.level == NotificationLevel.ERROR:
            logger.error(log_msg)
        else:
            logger.info(log_msg)


class CallbackNotifier(BaseNotifier):
    """Forwards notifications to a UI callback (toast, status bar, ...)."""

    def __init__(self, callback: Callable[[Notification], None]):
        self.callback = callback

    def deliver(self, notification: Notification) -> None:
        self.callback(notification)


class MemoryNotifier(BaseNotifier):
    """Keeps every notification in a list. Handy for tests and replays."""

    def __init__(self, max_items: Optional[int] = None):
        self.max_items = max_items
        self.items: List[Notification] = []

    def deliver(self, notification: Notification) -> None:
        self.items.append(notification)
        if self.max_items and len(self.items) > self.max_items:
            self.items = self.items[-self.max_items:]

    def messages(self, level: Optional[NotificationLevel] = None) -> List[str]:
        return [n.message for n in self.items if level is None or n.level == level]

    def clear(self) -> None:
        self.items.clear()


__all__ = [
    "NotificationLevel",
    "Notification",
    "BaseNotifier",
    "LogNotifier",
    "CallbackNotifier",
    "MemoryNotifier",
]
