# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Notification channel for progress and round events.

Delivery is fire-and-forget and at-least-once: a failing subscriber is
logged and skipped, it never interrupts the run that published the event.
"""
import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional

from skillbench.models import Notification, NotificationCallback

logger = logging.getLogger(__name__)


class NotificationBus:
    """Fan-out of notifications to callbacks and async streams."""

    def __init__(self) -> None:
        self._callbacks: List[NotificationCallback] = []
        self._queues: List[asyncio.Queue] = []

    def subscribe(self, callback: NotificationCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def publish(self, notification: Notification) -> None:
        for callback in list(self._callbacks):
            try:
                callback(notification)
            except Exception as e:
                logger.warning(
                    "Notification subscriber failed for %s: %s",
                    notification.type.value, e,
                )
        for queue in list(self._queues):
            queue.put_nowait(notification)

    async def stream(self, project_id: Optional[str] = None) -> AsyncIterator[Notification]:
        """Yield notifications as they are published, optionally for one project."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                notification = await queue.get()
                if project_id is None or notification.project_id == project_id:
                    yield notification
        finally:
            self._queues.remove(queue)
