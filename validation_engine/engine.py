from __future__ import annotations

import math
import numbers
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional, Tuple

from compatibility_registry import (
    allowed_scopes_for,
    field_schema_for,
    is_method_compatible,
    is_scope_compatible,
    method_profile_for,
    requires_target,
)
from contracts.errors import ValidationFailedError
from contracts.schemas import (
    AttachmentMeta,
    BindingMode,
    EvidenceDraft,
    FieldSchema,
    IntakeRequest,
    ItemRules,
    MethodProfile,
    RetentionPolicy,
    parse_utc_timestamp,
)

MIN_PURPOSE_LENGTH = 20
MIN_ATTESTATION_LENGTH = 20
MIN_EXTERNAL_REFERENCE_LENGTH = 3
MAX_EXTERNAL_REFERENCE_LENGTH = 120
MAX_RESOLUTION_WINDOW = timedelta(days=90)

_SHA256_HEX = re.compile(r"^[a-f0-9]{64}$")
_ROW_KEY = re.compile(r"^([A-Za-z_]+)\[(\d+)\]$")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: Mapping[str, str] = field(default_factory=dict)

    @property
    def invalid(self) -> bool:
        return not self.valid

    def failing_rows(self, collection: str = "components") -> Tuple[int, ...]:
        rows = (_ROW_KEY.match(k) for k in self.errors)
        return tuple(sorted({int(m.group(2)) for m in rows if m is not None and m.group(1) == collection}))

    @classmethod
    def from_errors(cls, errors: Mapping[str, str]) -> "ValidationResult":
        return cls(valid=(len(errors) == 0), errors=dict(sorted(errors.items())))


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _text_len(value: Optional[str]) -> int:
    return len((value or "").strip())


def _labels(values: Iterable[Any]) -> str:
    return ", ".join(sorted(getattr(v, "value", str(v)) for v in values))


# -----------------------------------------------------------------------------
# Intake checkpoint
# -----------------------------------------------------------------------------


def _check_binding(request: IntakeRequest) -> dict[str, str]:
    errors: dict[str, str] = {}
    scope = request.declared_scope
    mode = request.binding_mode
    if scope is None:
        return errors

    if requires_target(scope):
        if mode is None:
            errors["binding_mode"] = "Required when the scope targets an entity"
        elif mode in (BindingMode.BIND_EXISTING, BindingMode.CREATE_NEW) and _is_blank(request.bound_entity_id):
            errors["bound_entity_id"] = (
                "Please select an entity" if mode == BindingMode.BIND_EXISTING else "Please create an entity first"
            )
    elif mode not in (None, BindingMode.DEFER):
        errors["binding_mode"] = f"{scope.value} has no target entity; only DEFER is allowed"

    if mode == BindingMode.DEFER and not _is_blank(request.bound_entity_id):
        errors["bound_entity_id"] = "Must be empty when binding is deferred"
    return errors


def _check_resolution_deadline(request: IntakeRequest, now: datetime) -> dict[str, str]:
    raw = request.resolution_deadline_utc
    if _is_blank(raw):
        return {}
    scope = request.declared_scope
    if request.binding_mode != BindingMode.DEFER or scope is None or not requires_target(scope):
        return {"resolution_deadline_utc": "Only allowed when binding to a target entity is deferred"}
    deadline = parse_utc_timestamp(raw)
    if deadline is None:
        return {"resolution_deadline_utc": "Must be an ISO-8601 UTC timestamp"}
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if deadline <= now or deadline > now + MAX_RESOLUTION_WINDOW:
        return {"resolution_deadline_utc": f"Must be after now and at most {MAX_RESOLUTION_WINDOW.days} days ahead"}
    return {}


def validate_intake(request: IntakeRequest, now: Optional[datetime] = None) -> ValidationResult:
    errors: dict[str, str] = {}

    if _is_blank(request.tenant_id):
        errors["tenant_id"] = "Required"
    if request.ingestion_method is None:
        errors["ingestion_method"] = "Required"
    if request.evidence_type is None:
        errors["evidence_type"] = "Required"
    if request.declared_scope is None:
        errors["declared_scope"] = "Required"
    if request.provenance_source is None:
        errors["provenance_source"] = "Required"
    if _text_len(request.purpose) < MIN_PURPOSE_LENGTH:
        errors["purpose"] = f"Required (minimum {MIN_PURPOSE_LENGTH} characters)"

    if request.ingestion_method is not None:
        profile = method_profile_for(request.ingestion_method)
        if request.evidence_type is not None and not is_method_compatible(profile.method, request.evidence_type):
            errors["evidence_type"] = (
                f"{request.evidence_type.value} cannot be ingested via {profile.method.value}. "
                f"Allowed: {_labels(profile.allowed_evidence_types)}"
            )
        if profile.requires_external_reference_id:
            n = _text_len(request.external_reference_id)
            if n < MIN_EXTERNAL_REFERENCE_LENGTH or n > MAX_EXTERNAL_REFERENCE_LENGTH:
                errors["external_reference_id"] = (
                    f"Required for this method ({MIN_EXTERNAL_REFERENCE_LENGTH}-"
                    f"{MAX_EXTERNAL_REFERENCE_LENGTH} characters)"
                )

    if request.evidence_type is not None and request.declared_scope is not None:
        if not is_scope_compatible(request.evidence_type, request.declared_scope):
            errors["declared_scope"] = (
                f"Invalid scope for {request.evidence_type.value}. "
                f"Allowed: {_labels(allowed_scopes_for(request.evidence_type))}"
            )

    errors.update(_check_binding(request))
    errors.update(_check_resolution_deadline(request, now or datetime.now(timezone.utc)))

    if request.retention_policy is None:
        errors["retention_policy"] = "Required"
    elif request.retention_policy == RetentionPolicy.CUSTOM:
        if request.retention_custom_days is None or request.retention_custom_days <= 0:
            errors["retention_custom_days"] = "Required for CUSTOM retention (positive number of days)"

    return ValidationResult.from_errors(errors)


def enforce_intake(
    request: IntakeRequest,
    correlation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ValidationResult:
    result = validate_intake(request, now)
    if result.invalid:
        raise ValidationFailedError(result.errors, message="intake validation failed", correlation_id=correlation_id)
    return result


# -----------------------------------------------------------------------------
# Payload checkpoint
# -----------------------------------------------------------------------------


def row_issues(rules: ItemRules, row: Any) -> list[str]:
    if not isinstance(row, Mapping):
        return ["row must be an object"]

    issues: list[str] = []
    id_field, code_field = rules.identifier_fields
    has_id = not _is_blank(row.get(id_field))
    has_code = not _is_blank(row.get(code_field))
    if has_id and has_code:
        issues.append(f"exactly one identifier allowed ({id_field} or {code_field}, not both)")
    elif not has_id and not has_code:
        issues.append(f"missing identifier ({id_field} or {code_field})")

    qty = row.get(rules.quantity_field)
    if isinstance(qty, bool) or not isinstance(qty, numbers.Real) or not math.isfinite(qty) or qty <= 0:
        issues.append(f"{rules.quantity_field} must be > 0")

    if row.get(rules.unit_field) not in rules.allowed_units:
        issues.append(f"{rules.unit_field} must be one of: {_labels(rules.allowed_units)}")
    return issues


def validate_rows(rules: ItemRules, rows: Any) -> dict[str, str]:
    """Check every row independently; all failing rows are reported, not just the first."""
    coll = rules.collection_field
    if rows is None:
        rows = []
    if not isinstance(rows, (list, tuple)):
        return {coll: "Must be a list of rows"}
    if len(rows) < rules.min_items:
        return {coll: f"At least {rules.min_items} row(s) required"}

    errors: dict[str, str] = {}
    for i, row in enumerate(rows):
        issues = row_issues(rules, row)
        if issues:
            errors[f"{coll}[{i}]"] = "; ".join(issues)
    if errors:
        errors[coll] = f"{len(errors)} of {len(rows)} row(s) invalid"
    return errors


def validate_fields(schema: FieldSchema, payload: Mapping[str, Any]) -> dict[str, str]:
    errors: dict[str, str] = {}
    for f in sorted(schema.required):
        if _is_blank(payload.get(f)):
            errors[f] = f"{f} is required"
    for f in sorted(set(payload) - schema.known_fields):
        errors[f] = f"{f} is not a recognised field for {schema.evidence_type.value}"
    if schema.item_rules is not None:
        errors.update(validate_rows(schema.item_rules, payload.get(schema.item_rules.collection_field)))
    return errors


def _check_receipt(profile: MethodProfile, draft: EvidenceDraft) -> dict[str, str]:
    errors: dict[str, str] = {}
    if profile.requires_attestation and _text_len(draft.attestation_notes) < MIN_ATTESTATION_LENGTH:
        errors["attestation_notes"] = f"Required (minimum {MIN_ATTESTATION_LENGTH} characters)"

    for f in profile.required_receipt_fields:
        value = draft.receipt.get(f)
        if _is_blank(value):
            errors[f] = f"{f} is required for {profile.method.value}"
        elif f == "payload_digest_sha256" and not _SHA256_HEX.match(str(value)):
            errors[f] = "Must be 64 lowercase hex characters"
    return errors


def _check_attachments(profile: MethodProfile, attachments: Tuple[AttachmentMeta, ...]) -> dict[str, str]:
    errors: dict[str, str] = {}
    if len(attachments) < profile.min_attachments:
        errors["attachments"] = f"At least {profile.min_attachments} file attachment(s) required"
    for i, a in enumerate(attachments):
        issues: list[str] = []
        if _is_blank(a.file_name):
            issues.append("file_name is required")
        if a.size_bytes < 0:
            issues.append("size_bytes must be >= 0")
        if not _SHA256_HEX.match(a.sha256):
            issues.append("sha256 must be 64 lowercase hex characters")
        if issues:
            errors[f"attachments[{i}]"] = "; ".join(issues)
    return errors


def _json_issue(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (str, bool, int)):
        return None
    if isinstance(value, float):
        return None if math.isfinite(value) else "must be a finite number"
    if isinstance(value, (list, tuple)):
        for item in value:
            issue = _json_issue(item)
            if issue:
                return issue
        return None
    if isinstance(value, Mapping):
        for k, v in value.items():
            if not isinstance(k, str):
                return "object keys must be strings"
            issue = _json_issue(v)
            if issue:
                return issue
        return None
    return f"unsupported value type {type(value).__name__}"


def json_value_issues(values: Mapping[str, Any]) -> dict[str, str]:
    """Field errors for values that cannot be canonically serialised for hashing."""
    errors: dict[str, str] = {}
    for key, value in values.items():
        issue = _json_issue(value)
        if issue:
            errors[str(key)] = f"{key} {issue}"
    return errors


def effective_payload(draft: EvidenceDraft, schema: FieldSchema) -> dict[str, Any]:
    # Frozen identity values satisfy the schema fields they share with it.
    out = dict(draft.payload)
    if draft.binding_identity_snapshot is not None:
        for k, v in draft.binding_identity_snapshot.values:
            if k in schema.known_fields:
                out[k] = v
    return out


def validate_payload(draft: EvidenceDraft) -> ValidationResult:
    errors: dict[str, str] = {}

    if _text_len(draft.purpose) < MIN_PURPOSE_LENGTH:
        errors["purpose"] = f"Purpose explanation required (minimum {MIN_PURPOSE_LENGTH} characters)"
    if draft.provenance_source is None:
        errors["provenance_source"] = "Provenance source is required"

    profile = method_profile_for(draft.ingestion_method)
    if not is_method_compatible(profile.method, draft.evidence_type):
        errors["evidence_type"] = f"{draft.evidence_type.value} cannot be ingested via {profile.method.value}"
    if not is_scope_compatible(draft.evidence_type, draft.declared_scope):
        errors["declared_scope"] = f"Invalid scope for {draft.evidence_type.value}"
    if profile.requires_external_reference_id and _text_len(draft.external_reference_id) < MIN_EXTERNAL_REFERENCE_LENGTH:
        errors["external_reference_id"] = "Required for this method"

    errors.update(_check_receipt(profile, draft))
    errors.update(_check_attachments(profile, draft.attachments))

    schema = field_schema_for(draft.evidence_type)
    # Attachment-only submissions carry no structured payload to check.
    if schema is not None and (profile.validates_structured_payload or draft.payload):
        errors.update(validate_fields(schema, effective_payload(draft, schema)))

    for source in (draft.payload, draft.receipt):
        for key, issue in json_value_issues(source).items():
            errors.setdefault(key, issue)

    return ValidationResult.from_errors(errors)


def enforce_payload(draft: EvidenceDraft, correlation_id: Optional[str] = None) -> ValidationResult:
    result = validate_payload(draft)
    if result.invalid:
        raise ValidationFailedError(
            result.errors,
            message="payload validation failed",
            correlation_id=correlation_id or draft.correlation_id,
        )
    return result
