"""Change notification channel owned by each DBManager."""

import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class EventType(str, Enum):
    """Events published by DBManager."""

    ITEM_UPDATED = "item:update"


class ChangeNotifier:
    """Per-instance publish/subscribe channel.

    There is no buffering or replay: only handlers subscribed at publish time
    receive an event. Handlers may be plain functions or coroutine functions.
    """

    def __init__(self):
        """Initialize a channel with no subscribers."""
        self._subscribers: Dict[EventType, List[Handler]] = {}

    async def publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        """Publish an event to all current subscribers.

        A failing handler is logged and does not stop delivery to the others.

        Args:
            event_type: The type of event being published
            data: Event payload (the affected document)
        """
        handlers = list(self._subscribers.get(event_type, ()))
        if not handlers:
            return

        logger.debug("Publishing %s to %d subscriber(s)", event_type.value, len(handlers))

        for handler in handlers:
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Error in %s handler %r: %s", event_type.value, handler, e)

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        """Subscribe to an event type. Subscribing the same handler twice is a no-op.

        Args:
            event_type: The event type to subscribe to
            handler: Function or coroutine function receiving the payload
        """
        handlers = self._subscribers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)
            logger.debug("Added subscriber for %s", event_type.value)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        """Unsubscribe from an event type. Unknown handlers are ignored.

        Args:
            event_type: The event type to unsubscribe from
            handler: The handler to remove
        """
        handlers = self._subscribers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)
            logger.debug("Removed subscriber for %s", event_type.value)

            # Clean up empty subscriber lists
            if not handlers:
                del self._subscribers[event_type]

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers.get(event_type, ()))
