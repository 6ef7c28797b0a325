"""Loopback notification transport between the worker runtime and the host."""

from taskbridge.transport.client import NotificationClient, NotificationWatcher
from taskbridge.transport.server import NotificationServer

__all__ = [
    "NotificationClient",
    "NotificationServer",
    "NotificationWatcher",
]
