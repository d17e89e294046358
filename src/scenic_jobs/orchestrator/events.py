"""In-process observer registry for task lifecycle events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType
from typing import Any

logger = logging.getLogger(__name__)


class TaskEventKind(str, Enum):
    """Lifecycle notifications published by the task store."""

    TASK_ADDED = "task_added"
    TASK_UPDATED = "task_updated"
    TASK_LOG = "task_log"


@dataclass(slots=True, frozen=True)
class TaskEvent:
    """One published notification.

    ``payload`` is the full task record for added/updated events and the log
    entry record for log events.
    """

    kind: TaskEventKind
    task_id: str
    payload: dict[str, Any] = field(default_factory=dict)


EventCallback = Callable[[TaskEvent], None]


class Subscription:
    """Handle returned by :meth:`EventChannel.subscribe`."""

    def __init__(self, channel: EventChannel, callback: EventCallback) -> None:
        self.channel = channel
        self.callback = callback
        self.active = True

    def close(self) -> None:
        self.channel.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class EventChannel:
    """Synchronous fan-out to registered callbacks.

    There is no buffer: an observer only sees events published while it is
    subscribed and must query the store for anything earlier.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, callback: EventCallback) -> Subscription:
        """Register ``callback`` for all subsequent events."""

        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        logger.debug("EventChannel: subscriber added (total=%s)", len(self._subscriptions))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription; unknown or already closed handles are ignored."""

        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        subscription.active = False

    def publish(self, event: TaskEvent) -> None:
        """Deliver ``event`` to every current subscriber, in registration order."""

        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                subscription.callback(event)
            except Exception:
                logger.exception(
                    "EventChannel: subscriber failed on %s for task %s",
                    event.kind.value,
                    event.task_id,
                )
