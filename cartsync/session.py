"""
Session binding: reacts to identity changes by resetting or resyncing the cart.
"""
import logging
from enum import Enum
from typing import Optional

from cartsync.context import ViewingContext
from cartsync.exceptions import NoIdentityError, PermissionDeniedError
from cartsync.logging_config import hash_identifier
from cartsync.models import CartState
from cartsync.reconcile import ReconcileEngine

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    NO_USER = "no_user"
    USER_ACTIVE = "user_active"


class SessionBinding:
    """
    Owns the current ViewingContext.

    NoUser -> UserActive(email) -> NoUser. Opening a context always closes the
    previous one, so late completions from the old context are discarded by
    the engine.
    """

    def __init__(self, engine: ReconcileEngine):
        self._engine = engine
        self._store = engine.store
        self._context: Optional[ViewingContext] = None
        self._email: Optional[str] = None
        self._is_admin = False

    @property
    def state(self) -> SessionState:
        return SessionState.USER_ACTIVE if self._email else SessionState.NO_USER

    @property
    def email(self) -> Optional[str]:
        return self._email

    @property
    def is_admin(self) -> bool:
        return self._is_admin

    @property
    def store(self):
        return self._store

    @property
    def context(self) -> Optional[ViewingContext]:
        return self._context

    def require_context(self) -> ViewingContext:
        if self._context is None:
            raise NoIdentityError()
        return self._context

    def _open(self, owner_email: str) -> ViewingContext:
        if self._context is not None:
            self._context.close()
        self._context = ViewingContext(
            owner_email=owner_email,
            viewer_email=self._email,
            is_admin=self._is_admin
        )
        self._store.replace(CartState(owner_email=owner_email))
        return self._context

    async def login(self, email: str, is_admin: bool = False, token: Optional[str] = None) -> CartState:
        """Bind a user, show the persisted snapshot at once, then resync"""
        email = email.strip()
        if not email:
            raise NoIdentityError("Email is required")

        self._email = email
        self._is_admin = is_admin
        if token is not None:
            self._engine.backend.set_token(token)

        context = self._open(email)
        logger.info(
            "User session started",
            extra={"hashed_email": hash_identifier(email), "is_admin": is_admin}
        )
        if context.persist_snapshots:
            self._store.restore(email)
        return await self._engine.resync(context)

    def logout(self) -> None:
        """Drop the identity and clear the cart; nothing is persisted afterwards"""
        if self._context is not None:
            self._context.close()
        if self._email:
            logger.info("User session ended", extra={"hashed_email": hash_identifier(self._email)})
        self._context = None
        self._email = None
        self._is_admin = False
        self._store.reset()

    async def view_cart_of(self, email: str) -> CartState:
        """Administrator opens another user's cart as a separate viewing context"""
        if not self._email:
            raise NoIdentityError()
        if not self._is_admin:
            raise PermissionDeniedError()

        email = email.strip()
        if email == self._email:
            return await self.view_own_cart()

        context = self._open(email)
        logger.info(
            "Administrator viewing another cart",
            extra={"hashed_email": hash_identifier(email), "hashed_viewer": hash_identifier(self._email)}
        )
        return await self._engine.resync(context)

    async def view_own_cart(self) -> CartState:
        if not self._email:
            raise NoIdentityError()

        context = self._open(self._email)
        if context.persist_snapshots:
            self._store.restore(self._email)
        return await self._engine.resync(context)

    async def refresh(self) -> CartState:
        """On-demand resync of whatever is being viewed"""
        return await self._engine.resync(self.require_context())
