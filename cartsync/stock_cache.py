"""
Process-wide cache of last known stock per record.

Publishes a StockChange to every subscriber whenever a value actually changes.
Subscribers only see events published after they subscribed; anyone needing
the current value should call read() first and then subscribe().
"""
import itertools
import logging
from typing import Callable, Dict, Generic, Optional, TypeVar

from cartsync.models import StockChange

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle returned by subscribe(); close() stops delivery"""

    def __init__(self, publisher: "Publisher", token: int):
        self._publisher = publisher
        self.token = token

    @property
    def active(self) -> bool:
        return self.token in self._publisher._subscribers

    def close(self) -> None:
        self._publisher.unsubscribe(self)


class Publisher(Generic[T]):
    """Explicit subscriber-to-callback map with in-order delivery and no replay"""

    def __init__(self):
        self._subscribers: Dict[int, Callable[[T], None]] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        token = next(self._tokens)
        self._subscribers[token] = callback
        return Subscription(self, token)

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.pop(subscription.token, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: T) -> None:
        # Copy so callbacks may unsubscribe while we iterate
        for token, callback in list(self._subscribers.items()):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Subscriber {token} failed handling {type(event).__name__}")


class StockCache:
    """Last known stock quantity per record id"""

    def __init__(self):
        self._stock: Dict[int, int] = {}
        self._changes: Publisher[StockChange] = Publisher()

    def update(self, record_id: int, quantity: int) -> None:
        """Store the value and notify subscribers if it changed"""
        quantity = max(0, int(quantity))
        if self._stock.get(record_id) == quantity:
            return
        self._stock[record_id] = quantity
        logger.debug(
            f"Stock updated for record {record_id}",
            extra={"record_id": record_id, "quantity": quantity}
        )
        self._changes.publish(StockChange(record_id=record_id, quantity=quantity))

    def read(self, record_id: int) -> Optional[int]:
        """Cached quantity, or None when the record was never observed"""
        return self._stock.get(record_id)

    def subscribe(self, callback: Callable[[StockChange], None]) -> Subscription:
        return self._changes.subscribe(callback)

    def unsubscribe(self, subscription: Subscription) -> None:
        self._changes.unsubscribe(subscription)

    def snapshot(self) -> Dict[int, int]:
        return dict(self._stock)

    def clear(self) -> None:
        """Forget all cached values without notifying subscribers"""
        self._stock.clear()
