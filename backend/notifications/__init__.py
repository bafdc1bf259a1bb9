# notifications/__init__.py
from notifications.dispatcher import (
    EventBusNotificationDispatcher,
    InMemoryNotificationDispatcher,
    NotificationDispatcher,
    OrderNotification,
)

__all__ = [
    "EventBusNotificationDispatcher",
    "InMemoryNotificationDispatcher",
    "NotificationDispatcher",
    "OrderNotification",
]
