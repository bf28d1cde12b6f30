import itertools
import logging
import threading
from typing import Any, Callable, Dict, Hashable, Optional, Set, Tuple

from models import Notification, NotificationKind
from utils import format_departure

logger = logging.getLogger(__name__)

Subscriber = Callable[[Notification], None]


def build_notification(kind, data: Dict[str, Any], recipient_id: Optional[str] = None) -> Notification:
    """Render a notification kind and its payload into a title and body."""
    kind = NotificationKind(kind)
    if kind == NotificationKind.BOOKING_CONFIRMATION:
        title = "Booking Confirmed!"
        body = f"Your ride from {data.get('source')} to {data.get('destination')} has been confirmed."
        if data.get("passenger_email") and data.get("seats"):
            body += f" {data['passenger_email']} booked {data['seats']} seat(s)."
    elif kind == NotificationKind.RIDE_UPDATE:
        title = "Ride Update"
        body = f"There's an update to your ride on {format_departure(data.get('date_time'))}"
    elif kind == NotificationKind.RIDE_CANCELLATION:
        title = "Ride Cancelled"
        body = f"The ride from {data.get('source')} to {data.get('destination')} has been cancelled."
    else:
        title = "New Message"
        body = f"New message from {data.get('sender_name')}"
    return Notification(kind=kind, title=title, body=body, data=data, recipient_id=recipient_id)


class NotificationCenter:
    """
    Best-effort, in-process notification channel.

    Subscribers register a callback (optionally for one recipient) and get back
    an unsubscribe callable. Delivery has no acknowledgment or retry: a failing
    subscriber is logged and skipped.

    A subscription may carry a ``key`` (the UI uses its session id): subscribing
    again under the same key replaces the earlier callback, and ``prune`` drops
    keyed subscriptions whose owner is gone.
    """

    def __init__(self):
        self._subscribers: Dict[Hashable, Tuple[Optional[str], Subscriber]] = {}
        self._keyed: Set[Hashable] = set()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        callback: Subscriber,
        recipient_id: Optional[str] = None,
        key: Optional[Hashable] = None,
    ) -> Callable[[], None]:
        entry = (recipient_id, callback)
        with self._lock:
            if key is None:
                token = ("anonymous", next(self._ids))
            else:
                token = ("keyed", key)
                self._keyed.add(token)
            self._subscribers[token] = entry

        def unsubscribe():
            with self._lock:
                # a later subscription under the same key is left alone
                if self._subscribers.get(token) is entry:
                    del self._subscribers[token]
                    self._keyed.discard(token)

        return unsubscribe

    def prune(self, is_alive: Callable[[Hashable], bool]) -> int:
        """Remove keyed subscriptions for which ``is_alive(key)`` is false."""
        with self._lock:
            dead = [token for token in self._keyed if not is_alive(token[1])]
            for token in dead:
                self._subscribers.pop(token, None)
                self._keyed.discard(token)
        if dead:
            logger.info(f"Pruned {len(dead)} stale notification subscription(s)")
        return len(dead)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def notify(self, kind, data: Dict[str, Any], recipient_id: Optional[str] = None) -> Notification:
        notification = build_notification(kind, data, recipient_id=recipient_id)
        with self._lock:
            targets = [
                callback
                for wanted, callback in self._subscribers.values()
                if wanted is None or recipient_id is None or wanted == recipient_id
            ]
        logger.info(f"{notification.kind.value} -> {recipient_id or 'all'} ({len(targets)} subscriber(s))")
        for callback in targets:
            try:
                callback(notification)
            except Exception:
                logger.exception(f"Notification subscriber failed for {notification.kind.value}")
        return notification
