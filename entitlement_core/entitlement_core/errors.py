"""Exception hierarchy raised by the entitlement engine.

Every engine error carries an HTTP-compatible ``status_code`` so the API
layer can render it with a single exception handler.  Store and driver
failures (``SQLAlchemyError`` and friends) are never wrapped here; they
propagate unmodified.
"""

from __future__ import annotations

from typing import Any


class EntitlementError(Exception):
    """Base class for all engine errors."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Access denied (enforcement)
# ---------------------------------------------------------------------------


class AccessDeniedError(EntitlementError):
    """The customer may not perform the requested action.

    ``result`` holds the :class:`~entitlement_core.models.EnforcementResult`
    that produced the denial so callers can still read usage numbers.
    """

    status_code = 403

    def __init__(self, message: str, result: Any = None) -> None:
        super().__init__(message)
        self.result = result


class NoEntitlementError(AccessDeniedError):
    """No active grant exists for the feature."""


class LimitExceededError(AccessDeniedError):
    """Numeric usage would exceed the entitlement limit."""


class FeatureDisabledError(AccessDeniedError):
    """A boolean entitlement exists but is switched off."""


# ---------------------------------------------------------------------------
# Seat validation
# ---------------------------------------------------------------------------


class SeatValidationError(EntitlementError):
    """A seat operation violates the capacity rules."""

    status_code = 400


class NoEntitlementForSeatError(SeatValidationError):
    """A seat was requested for a feature the customer is not entitled to."""


class NoSeatsAvailableError(SeatValidationError):
    """A seat was requested while the feature is at capacity."""


class SeatAlreadyAssignedError(SeatValidationError):
    """The transfer target already occupies a seat."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(EntitlementError):
    """A referenced entity does not exist."""

    status_code = 404


class CustomerNotFoundError(NotFoundError):
    """The customer does not exist in the workspace."""


class SeatNotFoundError(NotFoundError):
    """No active seat assignment matched."""
