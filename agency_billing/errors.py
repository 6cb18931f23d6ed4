"""Domain errors raised by the billing core.

The request layer maps these onto HTTP responses; everything else in the core
raises them directly so callers can tell a rejected input from a missing
record.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for errors surfaced to callers of the billing core."""


class ValidationError(BillingError):
    """Input was rejected before any computation ran."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class NotFoundError(BillingError):
    """A referenced record does not exist in the expected workspace."""

    def __init__(self, kind: str, identifier: object = None) -> None:
        message = f"{kind.replace('_', ' ').capitalize()} not found"
        if identifier is not None:
            message = f"{message}: {identifier}"
        super().__init__(message)
        self.kind = kind
        self.identifier = identifier
