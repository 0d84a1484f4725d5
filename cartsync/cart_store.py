"""
Local cart state for the active viewing context.

Every public operation is total: storage problems are logged and reported
through return values, never raised.
"""
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from cartsync.config import Config
from cartsync.exceptions import RedisConnectionError
from cartsync.logging_config import hash_identifier
from cartsync.models import CartAggregates, CartLine, CartState, round_money
from cartsync.snapshot_store import SnapshotStore
from cartsync.stock_cache import Publisher, StockCache, Subscription

logger = logging.getLogger(__name__)


class _Removed:
    def __repr__(self) -> str:
        return "REMOVED"


REMOVED = _Removed()

LineResult = Union[CartLine, _Removed]


def _placeholders() -> Dict[str, str]:
    return {
        "title": Config.PLACEHOLDER_TITLE,
        "image_url": Config.PLACEHOLDER_IMAGE,
        "group_name": Config.PLACEHOLDER_GROUP,
    }


class CartStore:
    """Holds the cart lines and publishes derived aggregates"""

    def __init__(
        self,
        snapshots: Optional[SnapshotStore] = None,
        stock_cache: Optional[StockCache] = None
    ):
        self._state = CartState()
        self._snapshots = snapshots
        self._stock_cache = stock_cache
        self._aggregate_updates: Publisher[CartAggregates] = Publisher()

    @property
    def state(self) -> CartState:
        return self._state.model_copy(deep=True)

    @property
    def owner_email(self) -> str:
        return self._state.owner_email

    @property
    def enabled(self) -> bool:
        return self._state.enabled

    def get_line(self, record_id: int) -> Optional[CartLine]:
        line = self._state.line_for(record_id)
        return line.model_copy() if line else None

    def quantity_of(self, record_id: int) -> int:
        line = self._state.line_for(record_id)
        return line.quantity if line else 0

    def stock_for(self, record_id: int) -> Optional[int]:
        """Stock as seen by this cart: the shared cache first, then the line itself"""
        if self._stock_cache is not None:
            cached = self._stock_cache.read(record_id)
            if cached is not None:
                return cached
        line = self._state.line_for(record_id)
        return line.stock if line else None

    def index_of(self, record_id: int) -> Optional[int]:
        for index, line in enumerate(self._state.lines):
            if line.record_id == record_id:
                return index
        return None

    def replace(self, state: CartState) -> None:
        """Swap the whole cart and publish the new aggregates"""
        self._state = state.model_copy(deep=True)
        self._emit()

    def reset(self) -> None:
        """Empty cart with no owner"""
        self.replace(CartState())

    def set_enabled(self, enabled: bool) -> None:
        if self._state.enabled == enabled:
            return
        self._state.enabled = enabled
        self._emit()

    def apply_line_delta(
        self,
        record_id: int,
        delta: int,
        unit_price_if_new: Optional[Decimal] = None,
        metadata_if_new: Optional[Dict[str, Any]] = None
    ) -> LineResult:
        """
        Adjust one line's quantity by delta.

        A missing line is created for a positive delta; a line that reaches
        zero is dropped. Quantities never go below zero.

        Returns:
            The resulting CartLine, or REMOVED when no line remains
        """
        index = self.index_of(record_id)

        if index is None:
            if delta <= 0:
                return REMOVED
            metadata = dict(metadata_if_new or {})
            line = CartLine(
                record_id=record_id,
                title=metadata.get("title") or "",
                image_url=metadata.get("image_url") or "",
                group_name=metadata.get("group_name") or "",
                unit_price=Decimal(str(unit_price_if_new or 0)),
                quantity=delta,
                stock=max(0, int(metadata.get("stock") or 0))
            )
            self._state.lines.append(line)
            self._emit()
            return line.model_copy()

        current = self._state.lines[index]
        new_quantity = max(0, current.quantity + delta)
        if new_quantity == 0:
            del self._state.lines[index]
            self._emit()
            return REMOVED

        line = current.model_copy(update={"quantity": new_quantity})
        self._state.lines[index] = line
        self._emit()
        return line.model_copy()

    def restore_line(
        self,
        record_id: int,
        previous_line: Optional[CartLine],
        position: Optional[int] = None
    ) -> None:
        """Put a line back exactly as it was, or drop it if it did not exist"""
        index = self.index_of(record_id)

        if previous_line is None:
            if index is not None:
                del self._state.lines[index]
                self._emit()
            return

        line = previous_line.model_copy()
        if index is not None:
            self._state.lines[index] = line
        else:
            if position is None:
                position = len(self._state.lines)
            self._state.lines.insert(min(position, len(self._state.lines)), line)
        self._emit()

    def update_line_metadata(
        self,
        record_id: int,
        price: Optional[Decimal] = None,
        stock: Optional[int] = None,
        title: Optional[str] = None,
        image_url: Optional[str] = None,
        group_name: Optional[str] = None,
        fill_placeholders: bool = False
    ) -> Optional[CartLine]:
        """
        Overwrite server-owned fields of an existing line.

        Blank strings never replace existing text. With fill_placeholders,
        text fields still blank afterwards get the listing placeholders.
        """
        index = self.index_of(record_id)
        if index is None:
            return None

        changes: Dict[str, Any] = {}
        if price is not None:
            changes["unit_price"] = Decimal(str(price))
        if stock is not None:
            changes["stock"] = max(0, int(stock))
        if title:
            changes["title"] = title
        if image_url:
            changes["image_url"] = image_url
        if group_name:
            changes["group_name"] = group_name

        current = self._state.lines[index]
        if fill_placeholders:
            for field, placeholder in _placeholders().items():
                if not changes.get(field, getattr(current, field)):
                    changes[field] = placeholder

        line = current.model_copy(update=changes)
        self._state.lines[index] = line
        self._emit()
        return line.model_copy()

    def aggregates(self) -> CartAggregates:
        """Item count and total price; both zero while the cart is disabled"""
        if not self._state.enabled:
            return CartAggregates()

        item_count = sum(line.quantity for line in self._state.lines)
        total = sum((line.line_total for line in self._state.lines), Decimal("0"))
        return CartAggregates(item_count=item_count, total_price=round_money(total))

    def refresh(self) -> CartAggregates:
        """Re-publish aggregates for the current state"""
        aggregates = self.aggregates()
        self._aggregate_updates.publish(aggregates)
        return aggregates

    def subscribe(self, callback: Callable[[CartAggregates], None]) -> Subscription:
        return self._aggregate_updates.subscribe(callback)

    def _emit(self) -> None:
        self._aggregate_updates.publish(self.aggregates())

    def persist(self, email: str) -> bool:
        """Write the current state as the snapshot for email"""
        if self._snapshots is None or not email:
            return False

        state = self.state
        state.owner_email = email
        try:
            self._snapshots.save(email, state)
            return True
        except RedisConnectionError as e:
            logger.warning(
                f"Could not persist cart snapshot: {e}",
                extra={"hashed_email": hash_identifier(email)}
            )
            return False

    def load_snapshot(self, email: str) -> Optional[CartState]:
        """Read the snapshot for email without applying it"""
        if self._snapshots is None or not email:
            return None

        try:
            snapshot = self._snapshots.load(email)
        except RedisConnectionError as e:
            logger.warning(
                f"Could not restore cart snapshot: {e}",
                extra={"hashed_email": hash_identifier(email)}
            )
            return None

        if snapshot is not None:
            snapshot.owner_email = email
            snapshot.error = None
        return snapshot

    def restore(self, email: str) -> Optional[CartState]:
        """Load the snapshot for email into the store, if one exists"""
        snapshot = self.load_snapshot(email)
        if snapshot is None:
            return None

        self.replace(snapshot)
        return self.state
