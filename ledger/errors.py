"""Ledger exception types."""

class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass

class NotFoundError(LedgerError):
    """Raised when a ledger record does not exist."""
    pass

class ListingNotFoundError(NotFoundError):
    """Raised when a listing is not found or no longer purchasable."""
    pass

class RequestNotFoundError(NotFoundError):
    """Raised when a purchase request is not found."""
    pass

class ProductNotFoundError(NotFoundError):
    """Raised when a product is not registered."""
    pass

class UserNotFoundError(NotFoundError):
    """Raised when a user does not exist."""
    pass

class ForbiddenError(LedgerError):
    """Raised when the caller has no rights over the resource."""
    pass

class NotCurrentOwnerError(ForbiddenError):
    """Raised when a transfer is attempted by someone other than the current owner."""
    def __init__(self, product_id: int, user_id: int = None):
        self.product_id = product_id
        self.user_id = user_id
        super().__init__("not current owner")

class InvalidStateError(LedgerError):
    """Raised when an operation is not allowed in the record's current status."""
    pass

class InvalidTransitionError(InvalidStateError):
    """Raised when a requested status change is not an allowed transition."""
    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from {current} to {target}")

class ConflictError(LedgerError):
    """Raised when a write would duplicate an active record."""
    pass

class InvalidPriceError(LedgerError):
    """Raised when a price or currency is invalid."""
    pass
