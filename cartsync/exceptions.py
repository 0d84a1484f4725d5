"""
Custom exceptions for cart reconciliation.
"""
from typing import Optional


class CartException(Exception):
    """Base exception for cart operations"""
    pass


class PreconditionError(CartException):
    """Raised before any optimistic effect when an operation may not start"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NoIdentityError(PreconditionError):
    """Raised when no user identity is bound to the viewing context"""
    def __init__(self, message: str = "No signed-in user"):
        super().__init__(message)


class CartDisabledError(PreconditionError):
    """Raised when the cart has been disabled by an administrator"""
    def __init__(self, owner_email: str):
        self.owner_email = owner_email
        super().__init__("Cart is disabled")


class OutOfStockError(PreconditionError):
    """Raised when the cached stock says the record is sold out"""
    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(f"Record {record_id} is out of stock")


class PermissionDeniedError(PreconditionError):
    """Raised when a non-administrator tries to open another user's cart"""
    def __init__(self, message: str = "Only administrators can view other carts"):
        super().__init__(message)


class OperationBusyError(CartException):
    """Raised when a mutation for the same owner and record is still in flight"""
    def __init__(self, owner_email: str, record_id: int):
        self.owner_email = owner_email
        self.record_id = record_id
        super().__init__(f"An operation on record {record_id} is already in progress")


class BackendError(CartException):
    """Raised when the shop backend call fails or returns an error status"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class MutationFailedError(CartException):
    """Raised after an optimistic mutation was rolled back"""
    def __init__(self, record_id: int, delta: int, cause: Optional[Exception] = None):
        self.record_id = record_id
        self.delta = delta
        self.cause = cause
        action = "add" if delta > 0 else "remove"
        super().__init__(f"Failed to {action} record {record_id}: {cause}")


class RedisConnectionError(CartException):
    """Raised when Redis connection fails"""
    pass
