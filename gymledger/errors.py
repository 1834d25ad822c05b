"""
errors.py
Error kinds raised by the subscription & ledger engine.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base exception for the engine."""


class ValidationError(LedgerError):
    """Raised when input violates a rule. Nothing has been written yet."""


class InvalidDuration(ValidationError):
    """Months outside 1..12 or not an integer."""


class InvalidFee(ValidationError):
    """Monthly fee below zero or not an integer."""


class InvalidAmount(ValidationError):
    """Non-positive amount on a payment or extension."""


class InvalidDate(ValidationError):
    """A calendar date that cannot be parsed."""


class InvalidEntry(ValidationError):
    """Unknown action or payment method on a ledger draft."""


class ResourceNotFound(LedgerError):
    def __init__(self, resource_id):
        super().__init__(f"Resource {resource_id!r} not found.")
        self.resource_id = resource_id


class PersistenceFailure(LedgerError):
    """
    The persistence collaborator failed. The underlying exception is kept
    as `cause` (and chained as __cause__); the engine never retries.
    """

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause
