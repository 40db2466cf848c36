"""In-process notification channel between the session and cart components."""
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Event(str, Enum):
    """Events published on the channel."""
    LOGIN_STARTED = "login-started"
    CART_UPDATED = "cart-updated"
    SESSION_CHANGED = "session-changed"
    CART_ERROR = "cart-error"
    APP_REMOUNT = "app-remount"


class ChangeReason(str, Enum):
    RESTORE = "restore"
    LOGIN = "login"
    LOGOUT = "logout"
    EXPIRED = "expired"
    USER_DRIFT = "user-drift"


@dataclass
class SessionChange:
    """Payload of SESSION_CHANGED."""
    reason: ChangeReason
    previous_user_id: Optional[str]
    user_id: Optional[str]

    @property
    def user_changed(self) -> bool:
        return self.previous_user_id != self.user_id


@dataclass
class CartUpdate:
    """Payload of CART_UPDATED: a full server cart for one user."""
    user_id: str
    lines: List[Any]


class EventChannel:
    """
    Publish/subscribe channel with sync or async handlers.

    Handlers run in subscription order and are awaited one after the other, so
    an emit returns only once every subscriber has applied the payload. A
    failing handler is logged and does not stop the others.
    """

    def __init__(self):
        self._handlers: Dict[Event, List[Callable]] = defaultdict(list)

    def subscribe(self, event: Event, handler: Callable) -> Callable[[], None]:
        """
        Register a handler for an event.

        Args:
            event: Event to listen for
            handler: Callable taking the payload; may be a coroutine function

        Returns:
            Function that removes the subscription
        """
        self._handlers[event].append(handler)
        return lambda: self.unsubscribe(event, handler)

    def unsubscribe(self, event: Event, handler: Callable) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: Event, payload: Any = None) -> None:
        """Deliver a payload to every handler of an event."""
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"[EVENTS] Handler {handler!r} failed for {event.value}")
