"""Synchronous publish/subscribe bus for comment store events.

Handlers run in registration order on the thread that emits. Every
subscription returns its own unsubscribe function; one-shot listeners
(such as the ones used by a blocked wait) must call it when done.
"""

import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from cowrite.logger import get_logger


class StoreEvent(str, Enum):
    """Events emitted by the comment store."""

    CHANGE = "change"
    NEW_COMMENT = "new_comment"
    COMMENT_REOPENED = "comment_reopened"


Handler = Callable[[Any], None]


@dataclass(eq=False)
class _Subscription:
    handler: Handler
    name: str


class EventBus:
    """Registry of callbacks per event kind."""

    def __init__(self) -> None:
        self._handlers: dict[StoreEvent, list[_Subscription]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: StoreEvent, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event``.

        Returns:
            Unsubscribe function. Calling it more than once is harmless.
        """
        subscription = _Subscription(handler=handler, name=getattr(handler, "__name__", "handler"))
        with self._lock:
            self._handlers[event].append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._handlers[event]:
                    self._handlers[event].remove(subscription)

        return unsubscribe

    on = subscribe

    def emit(self, event: StoreEvent, payload: Any = None) -> None:
        """Call every handler registered for ``event`` with ``payload``.

        A failing handler is logged and does not stop the others.
        """
        with self._lock:
            subscriptions = list(self._handlers.get(event, []))

        for subscription in subscriptions:
            try:
                subscription.handler(payload)
            except Exception as e:
                get_logger().exception(
                    f"Handler '{subscription.name}' failed for event '{event.value}'", e
                )

    def listener_count(self, event: StoreEvent) -> int:
        with self._lock:
            return len(self._handlers.get(event, []))
