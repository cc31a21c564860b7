"""Event delivery to lifecycle/backup listeners."""

import logging
import threading
from typing import Any, Callable, Optional

from gameserver_manager.models import EventType, ServerEvent

logger = logging.getLogger(__name__)

Listener = Callable[[ServerEvent], None]


class EventBus:
    """Fan-out of ServerEvents to subscribed callables.

    Listeners run synchronously on the emitting thread. A failing listener is
    logged and skipped; it never fails the operation that emitted the event.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that unsubscribes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(
        self,
        event_type: EventType,
        message: str,
        server_id: Optional[str] = None,
        **metadata: Any,
    ) -> ServerEvent:
        event = ServerEvent(type=event_type, message=message, server_id=server_id, metadata=metadata)
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed for '{event_type.value}': {e}")
        return event
