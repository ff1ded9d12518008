"""In-process notification bus for merged capture batches."""

import threading
from collections.abc import Callable

from chat_capture.logging import get_logger
from chat_capture.models import CaptureEvent

logger = get_logger("collector.events")

Subscriber = Callable[[CaptureEvent], None]


class EventBus:
    """Synchronous publish/subscribe; a failing subscriber never affects others."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Add a subscriber and return a function that removes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: CaptureEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber failed: service=%s", event.service_id)
