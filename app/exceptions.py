"""
Domain error taxonomy.

Services raise these; ``app.main`` renders them as
``{"detail": {"code", "message", "details"}}`` with the class's status code.
"""
from typing import Any, Optional


class BookingPlatformError(Exception):
    status_code: int = 500
    default_code: str = "PLATFORM_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(BookingPlatformError):
    """Malformed or incomplete request. ``details`` maps field -> problem."""
    status_code = 400
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict] = None) -> None:
        details = dict(details or {})
        if field:
            details.setdefault(field, message)
        super().__init__(message, details=details)
        self.field = field


class NotFoundError(BookingPlatformError):
    status_code = 404
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Any) -> None:
        super().__init__(
            f"{resource} {resource_id} not found",
            code=f"{resource.upper()}_NOT_FOUND",
            details={"id": str(resource_id)},
        )


class StateError(BookingPlatformError):
    """Operation not permitted in the current lifecycle state."""
    status_code = 409
    default_code = "INVALID_STATE"


class QuoteAlreadyLockedError(StateError):
    status_code = 400
    default_code = "QUOTE_ALREADY_LOCKED"

    def __init__(self, quote_id: Any) -> None:
        super().__init__(f"Quote {quote_id} is already locked", details={"id": str(quote_id)})


class QuoteExpiredError(StateError):
    status_code = 410
    default_code = "QUOTE_EXPIRED"

    def __init__(self, quote_id: Any) -> None:
        super().__init__(f"Quote {quote_id} has expired", details={"id": str(quote_id)})


class UpstreamError(BookingPlatformError):
    """Distance provider or payment processor failure."""
    status_code = 502
    default_code = "UPSTREAM_ERROR"


class PaymentFailedError(UpstreamError):
    status_code = 402
    default_code = "PAYMENT_FAILED"


class ConflictError(BookingPlatformError):
    status_code = 409
    default_code = "CONFLICT"


class PricingConfigError(BookingPlatformError):
    """Pricing configuration table is missing, ambiguous or malformed."""
    status_code = 500
    default_code = "PRICING_CONFIG_ERROR"
