"""
Viewing context passed explicitly into every reconcile operation.
"""
import itertools
from dataclasses import dataclass, field

_generations = itertools.count(1)


@dataclass
class ViewingContext:
    """
    Whose cart is being looked at, and by whom.

    A context is opened by SessionBinding and closed when the session moves
    on (logout, another login, switching between own cart and an
    administrator's view of another cart). Work that completes after its
    context was closed must not touch the cart.
    """
    owner_email: str
    viewer_email: str
    is_admin: bool = False
    generation: int = field(default_factory=lambda: next(_generations))
    active: bool = True

    @property
    def viewing_as_admin(self) -> bool:
        """Administrator looking at someone else's cart"""
        return self.is_admin and self.owner_email != self.viewer_email

    @property
    def is_admin_own_cart(self) -> bool:
        """Administrators do not shop; their own cart is always empty"""
        return self.is_admin and self.owner_email == self.viewer_email

    @property
    def persist_snapshots(self) -> bool:
        """Only a user's own cart is written to the local snapshot"""
        return not self.is_admin and self.owner_email == self.viewer_email

    def close(self) -> None:
        self.active = False
