"""Domain errors for the registration, payment, submission and jury workflows.

Every error carries an :class:`ErrorCode` and a user-safe message. The classes
also derive from the matching built-in exception (where one fits) so callers
that only know about ``ValueError`` / ``LookupError`` keep working.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CART_EMPTY = "CART_EMPTY"
    CART_EXPIRED = "CART_EXPIRED"
    CART_LOCKED = "CART_LOCKED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    CONSISTENCY_ERROR = "CONSISTENCY_ERROR"
    MATERIALIZATION_TIMEOUT = "MATERIALIZATION_TIMEOUT"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError, ValueError):
    """Malformed input or a blocked state transition. Never retried."""

    code = ErrorCode.VALIDATION_FAILED


class InvalidTransitionError(ValidationError):
    """Raised when a workflow transition is not allowed from the current state."""

    code = ErrorCode.INVALID_TRANSITION


class AuthorizationError(DomainError):
    """Wrong role or not the owner of the resource."""

    code = ErrorCode.FORBIDDEN


class NotFoundError(DomainError, LookupError):
    """Raised when a referenced entity does not exist."""

    code = ErrorCode.NOT_FOUND


class GatewayError(DomainError, RuntimeError):
    """The payment gateway (or another external system) failed or misbehaved."""

    code = ErrorCode.GATEWAY_ERROR


class ConsistencyError(DomainError, RuntimeError):
    """A committed workflow is incomplete and needs reconciliation."""

    code = ErrorCode.CONSISTENCY_ERROR


class MaterializationTimeout(ConsistencyError):
    """Materialization exceeded its deadline; the payment stays PENDING."""

    code = ErrorCode.MATERIALIZATION_TIMEOUT


__all__ = [
    "ErrorCode",
    "DomainError",
    "ValidationError",
    "InvalidTransitionError",
    "AuthorizationError",
    "NotFoundError",
    "GatewayError",
    "ConsistencyError",
    "MaterializationTimeout",
]
