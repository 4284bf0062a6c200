from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    QUARANTINED = "QUARANTINED"
    DRAFT_MISSING = "DRAFT_MISSING"
    STATE_CONFLICT = "STATE_CONFLICT"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    ADAPTER_CONTRACT_VIOLATION = "ADAPTER_CONTRACT_VIOLATION"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    ADAPTER_UNAVAILABLE = "ADAPTER_UNAVAILABLE"
    RECONCILIATION_REQUIRED = "RECONCILIATION_REQUIRED"
    UNKNOWN_IDENTIFIER = "UNKNOWN_IDENTIFIER"


class IntakeError(Exception):
    """
    Base for every structured failure the core surfaces.

    Carries a machine-readable code, a human message, the correlation id of
    the call that failed and optional details (field errors, conflicting ids).
    """

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.message = message
        self.correlation_id = correlation_id
        self.details: dict[str, Any] = dict(details or {})
        super().__init__(f"{self.code.value}: {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "details": dict(self.details),
        }


class ValidationFailedError(IntakeError):
    code = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        errors: Mapping[str, str],
        *,
        message: str = "validation failed",
        correlation_id: Optional[str] = None,
    ) -> None:
        self.errors = dict(errors)
        super().__init__(message, correlation_id=correlation_id, details={"errors": dict(errors)})


class DraftMissingError(IntakeError):
    code = ErrorCode.DRAFT_MISSING


class StateConflictError(IntakeError):
    code = ErrorCode.STATE_CONFLICT


class IdempotencyConflictError(IntakeError):
    code = ErrorCode.IDEMPOTENCY_CONFLICT


class AdapterContractViolationError(IntakeError):
    code = ErrorCode.ADAPTER_CONTRACT_VIOLATION


class NotConfiguredError(IntakeError):
    code = ErrorCode.NOT_CONFIGURED


class TransientGatewayError(IntakeError):
    code = ErrorCode.ADAPTER_UNAVAILABLE


class ReconciliationRequiredError(IntakeError):
    code = ErrorCode.RECONCILIATION_REQUIRED


class RegistryConfigurationError(IntakeError, ValueError):
    # Unknown method / evidence type / scope identifiers are programmer errors.
    code = ErrorCode.UNKNOWN_IDENTIFIER
