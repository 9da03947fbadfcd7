"""In-process publish point for assembled mail and client notifications."""

from typing import Any, Callable, Dict, List, Optional

from mailstream.utils.logging import get_logger

logger = get_logger(__name__)

Subscriber = Callable[[Any], Any]

MAIL_EVENT = "mail"
FLAGS_EVENT = "flags"
ERROR_EVENT = "error"


class EventBus:
    """Ordered subscriber registry keyed by event name.

    ``publish`` calls subscribers synchronously in registration order using a
    snapshot of the registry, so subscribing or unsubscribing from inside a
    callback only affects later publishes. A failing subscriber is logged and
    does not stop delivery to the rest.
    """

    def __init__(self):
        # event -> insertion-ordered set of handlers
        self._subscribers: Dict[str, Dict[Subscriber, None]] = {}

    def subscribe(self, event: str, handler: Subscriber) -> None:
        if not callable(handler):
            raise TypeError("handler must be callable")
        self._subscribers.setdefault(event, {})[handler] = None

    def unsubscribe(self, handler: Subscriber, event: Optional[str] = None) -> bool:
        """Remove ``handler`` from ``event`` or from every event when ``None``.

        Returns True if anything was removed.
        """
        events = [event] if event is not None else list(self._subscribers)
        removed = False
        for name in events:
            registry = self._subscribers.get(name)
            if registry is not None and handler in registry:
                del registry[handler]
                removed = True
        return removed

    def subscribers(self, event: str) -> List[Subscriber]:
        return list(self._subscribers.get(event, {}))

    def publish(self, event: str, payload: Any) -> int:
        """Deliver ``payload`` to every current subscriber of ``event``.

        Returns the number of subscribers that completed without raising.
        """
        delivered = 0
        for handler in self.subscribers(event):
            try:
                handler(payload)
                delivered += 1
            except Exception:
                logger.exception(
                    "Subscriber failed",
                    extra={"event": event, "subscriber": getattr(handler, "__qualname__", repr(handler))},
                )
        return delivered

    def clear(self) -> None:
        self._subscribers.clear()
