from .engine import (
    ValidationResult,
    effective_payload,
    enforce_intake,
    enforce_payload,
    json_value_issues,
    row_issues,
    validate_fields,
    validate_intake,
    validate_payload,
    validate_rows,
)

__all__ = [
    "ValidationResult",
    "effective_payload",
    "enforce_intake",
    "enforce_payload",
    "json_value_issues",
    "row_issues",
    "validate_fields",
    "validate_intake",
    "validate_payload",
    "validate_rows",
]
