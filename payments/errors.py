"""Payment exception types."""

class PaymentError(Exception):
    """Base exception for payment operations."""
    pass

class QuoteUnavailableError(PaymentError):
    """Raised when no usable native amount can be quoted for a fiat price."""
    pass
