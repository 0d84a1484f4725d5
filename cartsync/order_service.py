"""
Order service: creates an order from the current cart and invalidates cart state.
"""
import logging
from typing import Any, Dict, Optional

from cartsync.config import Config
from cartsync.context import ViewingContext
from cartsync.exceptions import NoIdentityError, PermissionDeniedError, PreconditionError
from cartsync.logging_config import hash_identifier
from cartsync.reconcile import ReconcileEngine

logger = logging.getLogger(__name__)


class OrderService:
    """Service for order creation from the cart"""

    def __init__(self, engine: ReconcileEngine):
        self.engine = engine

    async def create_order(
        self,
        context: ViewingContext,
        payment_method: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create an order from the owner's cart:
        1. Validate the viewing context and cart contents
        2. Ask the backend to turn the cart into an order
        3. Resync, since the backend has emptied the cart and changed stock

        Args:
            context: Active viewing context for the shopper's own cart
            payment_method: Payment method label (defaults to Config.DEFAULT_PAYMENT_METHOD)

        Returns:
            Dict with the backend's order payload and the resynced cart

        Raises:
            NoIdentityError: If nobody is signed in
            PermissionDeniedError: If an administrator tries to order for a viewed cart
            PreconditionError: If the cart is empty or disabled
            BackendError: If the backend rejects the order
        """
        if context is None or not context.active or not context.owner_email:
            raise NoIdentityError()
        if context.is_admin:
            raise PermissionDeniedError("Orders can only be placed from your own cart")

        store = self.engine.store
        if not store.enabled:
            raise PreconditionError("Cart is disabled")
        if store.aggregates().item_count == 0:
            raise PreconditionError("Cannot create an order from an empty cart")
        if self.engine.has_pending(context.owner_email):
            raise PreconditionError("Cart changes are still being saved")

        method = payment_method or Config.DEFAULT_PAYMENT_METHOD
        order = await self.engine.backend.create_order_from_cart(context.owner_email, method)
        logger.info(
            "Order created from cart",
            extra={"hashed_email": hash_identifier(context.owner_email), "payment_method": method}
        )

        cart = await self.engine.resync(context)
        return {
            "order": order,
            "cart": cart,
            "message": "Order created successfully. Cart has been refreshed."
        }
