from typing import Callable, Deque, List, Optional
from collections import deque
import logging
import threading

from src.config import settings
from src.bookings.schemas import BookingStatusChange

logger = logging.getLogger(__name__)

Subscriber = Callable[[BookingStatusChange], None]

class BookingNotifier:
    """Fan out committed booking transitions to subscribers.

    Delivery is fire-and-forget: a failing subscriber is logged and skipped,
    and nothing it does can undo the transition that was already committed.
    """

    def __init__(self, history_size: int = 1000):
        self._subscribers: List[Subscriber] = []
        self._history: Deque[BookingStatusChange] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        """Register a callback for every future transition"""
        with self._lock:
            if subscriber not in self._subscribers:
                self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def notify(self, change: BookingStatusChange) -> None:
        """Record ``change`` and hand it to each subscriber"""
        with self._lock:
            self._history.append(change)
            subscribers = list(self._subscribers)

        logger.info(
            "Booking %s status %s -> %s by %s",
            change.booking_id,
            change.old_status.value if change.old_status else None,
            change.new_status.value,
            change.actor_id
        )

        for subscriber in subscribers:
            try:
                subscriber(change)
            except Exception:
                logger.exception(
                    "Notification subscriber failed for booking %s", change.booking_id
                )

    def recent(
        self,
        limit: int = 50,
        station_id: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> List[BookingStatusChange]:
        """Most recent transitions first, optionally filtered"""
        with self._lock:
            changes = list(self._history)

        if station_id is not None:
            changes = [c for c in changes if c.station_id == station_id]
        if user_id is not None:
            changes = [c for c in changes if c.user_id == user_id]

        return list(reversed(changes))[:limit]

# Global notifier instance
booking_notifier = BookingNotifier(history_size=settings.NOTIFICATION_HISTORY_SIZE)
