"""
Domain error taxonomy.

Every service raises one of these; routes translate them into JSON responses.
Client-fixable problems are 4xx, "the system could not complete this safely"
problems are 5xx. `retryable` tells an operator whether trying again can help.
"""

from __future__ import annotations


class DomainError(Exception):
    """Base class for business errors raised by the service layer."""

    status_code = 400
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "error_type": self.error_type,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(DomainError):
    """400-level input problem."""


class NotFoundError(DomainError):
    """Unknown id, or an id belonging to another tenant."""

    status_code = 404


class InsufficientStockError(DomainError):
    """Business-rule rejection: the batch cannot absorb the deduction."""

    status_code = 409


class InvalidStateError(DomainError):
    """Illegal state transition (e.g. re-deciding a finalized request)."""

    status_code = 409


class InvariantViolationError(DomainError):
    """Audit-log consistency breach. Never expected; the unit of work is aborted."""

    status_code = 500


class PaymentGatewayError(DomainError):
    """Remote payment provider failed; compensable by retrying or another tender."""

    status_code = 502
    retryable = True
