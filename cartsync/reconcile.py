"""
Reconcile Engine - optimistic cart mutations and full resync

Each (owner, record) pair moves through
    idle -> pending -> confirmed | rolled_back -> idle

Features:
- Optimistic local effect applied synchronously, before any network call
- Exact rollback from a PendingOperation snapshot when the backend fails
- At most one pending operation per (owner, record); a second is rejected
- Full resync against the backend listing, which always wins over local guesses
- Completions for a closed viewing context are discarded

Usage:
    engine = ReconcileEngine(store, stock_cache, backend)
    result = await engine.add_to_cart(context, record_id)
    state = await engine.resync(context)
"""
import logging
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from cartsync.cart_store import REMOVED, CartStore
from cartsync.config import Config
from cartsync.context import ViewingContext
from cartsync.exceptions import (
    BackendError,
    CartDisabledError,
    MutationFailedError,
    NoIdentityError,
    OperationBusyError,
    OutOfStockError,
    PermissionDeniedError
)
from cartsync.logging_config import hash_identifier
from cartsync.models import (
    CartState,
    MutationResult,
    OperationState,
    OperationTransition,
    PendingOperation,
    RecordInfo
)
from cartsync.payloads import normalize_cart_details
from cartsync.stock_cache import Publisher, StockCache, Subscription

logger = logging.getLogger(__name__)

PairKey = Tuple[str, int]

RESYNC_FAILED_MESSAGE = "Could not load the cart from the server"


class ReconcileEngine:
    """Serializes every cart and stock mutation through the per-pair state machine"""

    def __init__(self, store: CartStore, stock_cache: StockCache, backend):
        self._store = store
        self._stock = stock_cache
        self._backend = backend
        self._pending: Dict[PairKey, PendingOperation] = {}
        self._states: Dict[PairKey, OperationState] = {}
        # Resync generation seen by each pending operation when it started
        self._pending_epochs: Dict[PairKey, int] = {}
        # Optimistic stock values written by pending operations and not yet
        # overwritten by a server value for the same record
        self._stock_guesses: Dict[PairKey, int] = {}
        self._resync_epoch = 0
        self._transitions: Publisher[OperationTransition] = Publisher()

    @property
    def store(self) -> CartStore:
        return self._store

    @property
    def stock_cache(self) -> StockCache:
        return self._stock

    @property
    def backend(self):
        return self._backend

    def state_of(self, owner_email: str, record_id: int) -> OperationState:
        return self._states.get((owner_email, record_id), OperationState.IDLE)

    def pending_for(self, owner_email: str, record_id: int) -> Optional[PendingOperation]:
        pending = self._pending.get((owner_email, record_id))
        return pending.model_copy() if pending else None

    def has_pending(self, owner_email: str) -> bool:
        return any(owner == owner_email for owner, _ in self._pending)

    def on_transition(self, callback: Callable[[OperationTransition], None]) -> Subscription:
        return self._transitions.subscribe(callback)

    def _transition(self, key: PairKey, state: OperationState) -> None:
        if state == OperationState.IDLE:
            self._states.pop(key, None)
        else:
            self._states[key] = state
        self._transitions.publish(
            OperationTransition(owner_email=key[0], record_id=key[1], state=state)
        )

    def _is_current(self, context: ViewingContext) -> bool:
        return context.active and self._store.owner_email == context.owner_email

    def _check_identity(self, context: Optional[ViewingContext]) -> ViewingContext:
        if context is None or not context.owner_email:
            raise NoIdentityError()
        if not self._is_current(context):
            raise NoIdentityError("Viewing context is no longer active")
        return context

    def _check_preconditions(self, context: Optional[ViewingContext], record_id: int, delta: int) -> None:
        context = self._check_identity(context)
        if context.is_admin_own_cart:
            raise PermissionDeniedError("Administrators do not shop")
        if not self._store.enabled:
            raise CartDisabledError(context.owner_email)
        if (context.owner_email, record_id) in self._pending:
            raise OperationBusyError(context.owner_email, record_id)
        if delta > 0:
            stock = self._stock.read(record_id)
            # Unknown stock is left for the backend to reject
            if stock is not None and stock <= 0:
                raise OutOfStockError(record_id)

    async def add_to_cart(
        self,
        context: ViewingContext,
        record_id: int,
        record: Optional[RecordInfo] = None
    ) -> MutationResult:
        """
        Add one unit of a record to the context owner's cart.

        Args:
            context: Active viewing context
            record_id: Record to add
            record: Catalog data used when the record is not in the cart yet

        Returns:
            MutationResult for the settled operation

        Raises:
            PreconditionError: Rejected before any local or remote effect
            OperationBusyError: Another operation on this record is in flight
            MutationFailedError: Backend failed; local state was rolled back
        """
        self._check_preconditions(context, record_id, +1)
        return await self._mutate(context, record_id, +1, record)

    async def remove_from_cart(self, context: ViewingContext, record_id: int) -> MutationResult:
        """
        Remove one unit of a record from the context owner's cart.

        Removing a record that is not in the cart is a no-op.
        """
        self._check_preconditions(context, record_id, -1)
        if self._store.quantity_of(record_id) <= 0:
            return MutationResult(
                record_id=record_id,
                state=OperationState.IDLE,
                line=None,
                stock=self._stock.read(record_id)
            )
        return await self._mutate(context, record_id, -1, None)

    def _apply_optimistic(self, pending: PendingOperation, record: Optional[RecordInfo]) -> None:
        record_id = pending.record_id
        unit_price: Optional[Decimal] = record.price if record is not None else None
        metadata = {
            "title": (record and record.title) or Config.PLACEHOLDER_TITLE,
            "image_url": (record and record.image_url) or Config.PLACEHOLDER_IMAGE,
            "group_name": (record and record.group_name) or Config.PLACEHOLDER_GROUP,
            "stock": record.stock if record is not None else 0,
        }

        line = self._store.apply_line_delta(record_id, pending.delta, unit_price, metadata)

        if pending.previous_stock is not None:
            new_stock = max(0, pending.previous_stock - pending.delta)
            self._stock.update(record_id, new_stock)
            self._stock_guesses[(pending.owner_email, record_id)] = new_stock
            if line is not REMOVED:
                self._store.update_line_metadata(record_id, stock=new_stock)

    def _push_stock(self, record_id: int, quantity: int) -> None:
        """Write a server-sourced stock value; it replaces any pending guess for the record"""
        for key in [key for key in self._stock_guesses if key[1] == record_id]:
            del self._stock_guesses[key]
        self._stock.update(record_id, quantity)

    def _revert_own_guess(self, pending: PendingOperation, guess: Optional[int]) -> None:
        """Restore the previous stock only if the cache still holds our own guess"""
        if guess is not None and self._stock.read(pending.record_id) == guess:
            self._stock.update(pending.record_id, pending.previous_stock)

    async def _mutate(
        self,
        context: ViewingContext,
        record_id: int,
        delta: int,
        record: Optional[RecordInfo]
    ) -> MutationResult:
        owner = context.owner_email
        key = (owner, record_id)
        previous_line = self._store.get_line(record_id)
        pending = PendingOperation(
            owner_email=owner,
            record_id=record_id,
            delta=delta,
            previous_quantity=previous_line.quantity if previous_line else 0,
            previous_stock=self._stock.read(record_id),
            previous_line=previous_line,
            previous_index=self._store.index_of(record_id)
        )
        self._pending[key] = pending
        self._pending_epochs[key] = self._resync_epoch
        self._transition(key, OperationState.PENDING)

        # Everything up to here runs before the first await
        self._apply_optimistic(pending, record)

        try:
            await self._backend.mutate_cart_detail(owner, record_id, delta)
            info = await self._backend.fetch_record(record_id)
        except BackendError as e:
            return self._roll_back(context, pending, e)
        except Exception as e:
            logger.exception(f"Unexpected error during cart mutation: {type(e).__name__}")
            return self._roll_back(context, pending, BackendError(str(e)))
        return self._confirm(context, pending, info)

    def _settle(self, key: PairKey) -> Tuple[bool, Optional[int]]:
        """
        Drop the pending entry.

        Returns:
            (superseded, guess): superseded is True when a resync replaced the
            cart meanwhile; guess is the optimistic stock still owned by this
            operation, or None
        """
        self._pending.pop(key, None)
        started_epoch = self._pending_epochs.pop(key, self._resync_epoch)
        return started_epoch != self._resync_epoch, self._stock_guesses.pop(key, None)

    def _discard(self, context: ViewingContext, key: PairKey) -> MutationResult:
        """Cart writes are skipped for a closed context; stock was settled by the caller"""
        self._transition(key, OperationState.IDLE)
        logger.info(
            "Discarding completion for a closed viewing context",
            extra={"hashed_email": hash_identifier(context.owner_email), "record_id": key[1]}
        )
        return MutationResult(
            record_id=key[1],
            state=OperationState.IDLE,
            stock=self._stock.read(key[1]),
            discarded=True
        )

    def _confirm(self, context: ViewingContext, pending: PendingOperation, info: RecordInfo) -> MutationResult:
        key = (pending.owner_email, pending.record_id)
        superseded, _ = self._settle(key)
        # Stock is process-wide, so the server value lands even for a closed context
        self._push_stock(pending.record_id, info.stock)
        if not self._is_current(context):
            return self._discard(context, key)

        if not superseded:
            self._store.update_line_metadata(
                pending.record_id,
                price=info.price,
                stock=info.stock,
                title=info.title,
                image_url=info.image_url,
                group_name=info.group_name,
                fill_placeholders=True
            )

        self._transition(key, OperationState.CONFIRMED)
        self._transition(key, OperationState.IDLE)
        self._after_settle(context)

        logger.info(
            "Cart mutation confirmed",
            extra={
                "hashed_email": hash_identifier(pending.owner_email),
                "record_id": pending.record_id,
                "delta": pending.delta,
                "stock": info.stock
            }
        )
        return MutationResult(
            record_id=pending.record_id,
            state=OperationState.CONFIRMED,
            line=self._store.get_line(pending.record_id),
            stock=self._stock.read(pending.record_id)
        )

    def _roll_back(self, context: ViewingContext, pending: PendingOperation, error: BackendError) -> MutationResult:
        key = (pending.owner_email, pending.record_id)
        superseded, guess = self._settle(key)
        if not self._is_current(context):
            self._revert_own_guess(pending, guess)
            return self._discard(context, key)

        if not superseded:
            self._store.restore_line(pending.record_id, pending.previous_line, pending.previous_index)
            if pending.previous_stock is not None:
                self._stock.update(pending.record_id, pending.previous_stock)
        else:
            self._revert_own_guess(pending, guess)

        self._transition(key, OperationState.ROLLED_BACK)
        self._transition(key, OperationState.IDLE)
        self._after_settle(context)

        logger.warning(
            f"Cart mutation rolled back: {error}",
            extra={
                "hashed_email": hash_identifier(pending.owner_email),
                "record_id": pending.record_id,
                "delta": pending.delta,
                "status_code": error.status_code
            }
        )
        raise MutationFailedError(pending.record_id, pending.delta, error)

    def _after_settle(self, context: ViewingContext) -> None:
        self._store.refresh()
        if context.persist_snapshots and not self.has_pending(context.owner_email):
            self._store.persist(context.owner_email)

    def _apply_resync(self, state: CartState) -> CartState:
        self._store.replace(state)
        self._resync_epoch += 1
        return self._store.state

    async def resync(self, context: ViewingContext) -> CartState:
        """
        Replace local cart and stock with the backend's view.

        Transport failures never raise: the persisted snapshot (own cart only)
        or an empty cart is shown instead, with the error flag set.

        Raises:
            NoIdentityError: If the context has no owner
        """
        if context is None or not context.owner_email:
            raise NoIdentityError()
        owner = context.owner_email
        hashed_owner = hash_identifier(owner)

        if context.is_admin_own_cart:
            if not self._is_current(context):
                return CartState(owner_email=owner)
            return self._apply_resync(CartState(owner_email=owner))

        try:
            payload = await self._backend.fetch_cart_details(owner)
        except BackendError as e:
            logger.error(
                f"Error syncing cart with backend: {e}",
                extra={"hashed_email": hashed_owner, "status_code": e.status_code}
            )
            return self._fall_back(context)

        status = await self._backend.fetch_cart_status(owner)
        state = CartState(
            owner_email=owner,
            lines=normalize_cart_details(payload),
            enabled=status.enabled
        )

        if not self._is_current(context):
            logger.info("Discarding resync for a closed viewing context", extra={"hashed_email": hashed_owner})
            return state

        result = self._apply_resync(state)
        for line in result.lines:
            self._push_stock(line.record_id, line.stock)

        if context.persist_snapshots and not self.has_pending(owner):
            self._store.persist(owner)

        logger.info(
            "Cart resynced",
            extra={"hashed_email": hashed_owner, "lines": len(result.lines), "enabled": result.enabled}
        )
        return result

    def _fall_back(self, context: ViewingContext) -> CartState:
        owner = context.owner_email
        snapshot = self._store.load_snapshot(owner) if context.persist_snapshots else None
        state = snapshot or CartState(owner_email=owner)
        state.error = RESYNC_FAILED_MESSAGE

        if not self._is_current(context):
            return state
        return self._apply_resync(state)

    async def set_cart_enabled(self, context: ViewingContext, enabled: bool) -> CartState:
        """
        Administrator action: enable or disable the context owner's cart.

        Raises:
            PermissionDeniedError: If the viewer is not an administrator
            BackendError: If the backend rejects the change
        """
        context = self._check_identity(context)
        if not context.is_admin:
            raise PermissionDeniedError("Only administrators can enable or disable carts")

        if enabled:
            await self._backend.enable_cart(context.owner_email)
        else:
            await self._backend.disable_cart(context.owner_email)

        if self._is_current(context):
            self._store.set_enabled(enabled)
        logger.info(
            f"Cart {'enabled' if enabled else 'disabled'}",
            extra={"hashed_email": hash_identifier(context.owner_email)}
        )
        return self._store.state
