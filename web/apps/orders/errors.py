"""Error taxonomy for the orders engine.

Every failure raised by the engine is an ``OrderError``. Each subclass
carries a stable machine-readable ``code`` (also returned by ``str(exc)``,
so callers can keep matching on ``str(e)`` the way the views do), a human
``message`` and optional ``details`` that are merged into API error bodies.

``DependencyUnavailable`` is the only retryable error: it signals that the
catalog, stock or persistence backend could not be reached.
"""


class OrderError(ValueError):
    """Base class for all engine errors.

    Attributes:
        code: Stable error kind, e.g. ``INSUFFICIENT_STOCK``.
        message: Human readable explanation.
        details: Extra JSON-serializable context (product id, status...).
        retryable: Whether the caller may retry the same request.
    """

    code = "ORDER_ERROR"
    default_message = "The order could not be processed."
    retryable = False

    def __init__(self, message: str | None = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.code)

    def to_dict(self) -> dict:
        """Return the error as an API body: ``{"detail": code, "message": ...}``."""
        body = {"detail": self.code, "message": self.message}
        body.update(self.details)
        return body


class ValidationError(OrderError):
    code = "VALIDATION_ERROR"
    default_message = "The request is malformed."


class ProductUnavailable(OrderError):
    code = "PRODUCT_UNAVAILABLE"
    default_message = "A requested product is unknown, inactive or out of stock."


class InsufficientStock(OrderError):
    code = "INSUFFICIENT_STOCK"
    default_message = "Not enough stock to reserve the requested quantity."


class InvalidDiscount(OrderError):
    code = "INVALID_DISCOUNT"
    default_message = "The discount code cannot be applied."


class InvalidCode(InvalidDiscount):
    code = "INVALID_CODE"
    default_message = "The discount code does not exist."


class Expired(InvalidDiscount):
    code = "EXPIRED"
    default_message = "The discount code is not valid at this time."


class BelowMinimum(InvalidDiscount):
    code = "BELOW_MINIMUM"
    default_message = "The order value is below the minimum for this code."


class UsageLimitReached(InvalidDiscount):
    code = "USAGE_LIMIT_REACHED"
    default_message = "The discount code has reached its usage limit."


class InvalidTransition(OrderError):
    code = "INVALID_TRANSITION"
    default_message = "The order cannot move to the requested status."


class NotFound(OrderError):
    code = "NOT_FOUND"
    default_message = "The requested resource does not exist."


class ConflictingUpdate(OrderError):
    code = "CONFLICTING_UPDATE"
    default_message = "The order was modified concurrently; reload and retry."


class DependencyUnavailable(OrderError):
    code = "DEPENDENCY_UNAVAILABLE"
    default_message = "An upstream service is unavailable; retry later."
    retryable = True
