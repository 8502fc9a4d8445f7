"""
Toko Storefront - Custom Exceptions
====================================
Business-level exceptions. Each carries the HTTP status it maps to;
main.py renders them as {"success": false, "message": ...}.
"""

from typing import Optional

from fastapi import status


class StoreError(Exception):
    """Base exception for all business logic errors."""
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Terjadi kesalahan sistem.", status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(StoreError):
    """Raised for user-fixable input problems."""
    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(StoreError):
    """Raised when no valid session is present."""
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "unauthorized"):
        super().__init__(message)


class AuthorizationError(StoreError):
    """Raised when the caller lacks permission or fails the CSRF check."""
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "unauthorized"):
        super().__init__(message)


class NotFoundError(StoreError):
    """Raised when a requested resource doesn't exist."""
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(StoreError):
    """Raised when the request conflicts with current state."""
    status_code = status.HTTP_409_CONFLICT


class InsufficientStockError(ConflictError):
    """Raised when product stock is not enough."""
    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        self.shortfall = max(requested - available, 0)
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}, Requested: {requested}"
        )


class OrderNotCancellableError(ConflictError):
    """Raised when an order's status does not allow cancellation."""
    pass


class RequestTooLargeError(StoreError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    def __init__(self, message: str = "Request too large"):
        super().__init__(message)


class RateLimitError(StoreError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str = "Too many requests. Please try again later."):
        super().__init__(message)


# ==========================================
# Upstream dependencies
# ==========================================

class ShippingError(StoreError):
    """Base for carrier API problems."""
    status_code = status.HTTP_502_BAD_GATEWAY


class ShippingTimeoutError(ShippingError):
    """Carrier API did not answer within the timeout."""
    status_code = status.HTTP_408_REQUEST_TIMEOUT

    def __init__(self, message: str = "Request timeout - shipping service is taking too long"):
        super().__init__(message)


class ShippingUpstreamError(ShippingError):
    """Carrier API rejected the request or returned garbage."""
    def __init__(self, message: str = "Shipping service unavailable", stage: str = "", upstream_status: Optional[int] = None):
        self.stage = stage
        self.upstream_status = upstream_status
        super().__init__(message)


class AreaNotFoundError(ShippingError):
    """A postal code could not be resolved to a carrier area."""
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, *postal_codes: str):
        self.postal_codes = [p for p in postal_codes if p]
        super().__init__(f"Area not found for postal codes: {' or '.join(self.postal_codes)}")


class PaymentError(StoreError):
    """Raised for payment gateway errors."""
    status_code = status.HTTP_502_BAD_GATEWAY
