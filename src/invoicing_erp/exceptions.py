"""Exception hierarchy shared by the data access and business logic layers."""

from __future__ import annotations

from typing import Optional


class InvoicingError(Exception):
    """Base class for every domain failure surfaced by the package."""


class ValidationError(InvoicingError):
    """Raised when a field is missing or violates a domain constraint.

    ``field`` names the offending attribute so front-ends can highlight it.
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class MissingReferenceError(ValidationError):
    """Raised when a referenced client, product, or invoice is unknown."""

    def __init__(self, field: str, reference: str) -> None:
        self.reference = reference
        super().__init__(field, f"unknown reference '{reference}'")


class LifecycleError(InvoicingError):
    """Raised when an invoice status transition is not permitted."""

    def __init__(self, current: str, target: str, reason: Optional[str] = None) -> None:
        self.current = current
        self.target = target
        message = f"Invalid status transition {current} -> {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class NumberingConflictError(InvoicingError):
    """Raised when an invoice number is already taken at commit time."""

    def __init__(self, number: str, attempts: int = 1) -> None:
        self.number = number
        self.attempts = attempts
        super().__init__(f"Invoice number '{number}' already exists (after {attempts} attempt(s))")


class CollaboratorError(InvoicingError):
    """Raised when storage or an external service fails or times out."""


__all__ = [
    "InvoicingError",
    "ValidationError",
    "MissingReferenceError",
    "LifecycleError",
    "NumberingConflictError",
    "CollaboratorError",
]
