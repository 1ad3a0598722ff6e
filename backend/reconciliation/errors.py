"""
Reconciliation Errors

Exception hierarchy raised by the reconciliation engine. Validation problems
found while checking an allocation batch are returned as a list, not raised
one by one; ValidationFailedError exists for callers that want to raise the
complete list.
"""

from typing import Any, Dict, List, Optional


class ReconciliationError(Exception):
    """Base class for reconciliation engine errors."""
    pass


class NotFoundError(ReconciliationError):
    """A ledger transaction, bank transaction or link does not exist."""

    def __init__(self, resource: str, identifier: Any = None):
        self.resource = resource
        self.identifier = identifier
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} {identifier} not found"
        super().__init__(message)


class ValidationFailedError(ReconciliationError):
    """An allocation batch failed validation."""

    def __init__(self, errors: List[str], summary: Optional[Dict[str, Any]] = None):
        self.errors = list(errors)
        self.summary = summary or {}
        super().__init__(f"Validation failed: {'; '.join(self.errors)}")


class ExternalServiceError(ReconciliationError):
    """The upstream bank feed could not be reached or answered with an error."""

    def __init__(self, service_name: str, original_error: Optional[BaseException] = None):
        self.service_name = service_name
        self.original_error = original_error
        message = f"External service error: {service_name}"
        if original_error is not None:
            message = f"{message} ({original_error})"
        super().__init__(message)


class ConfigurationError(ReconciliationError):
    """Required configuration (bank feed credentials) is missing."""
    pass
