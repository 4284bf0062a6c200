from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from binding_resolver import BindingDecision, apply_binding, identity_conflicts
from contracts.errors import StateConflictError, ValidationFailedError
from contracts.schemas import (
    DraftStatus,
    EvidenceDraft,
    IntakeRequest,
    PayloadSubmission,
    RetentionPolicy,
    TransitionEvent,
    parse_utc_timestamp,
)
from validation_engine import ValidationResult, enforce_intake, validate_payload

logger = logging.getLogger(__name__)

QUARANTINE_REASON = "PAYLOAD_VALIDATION_FAILED"

TRANSITIONS: Mapping[DraftStatus, frozenset[DraftStatus]] = {
    DraftStatus.DRAFT_CREATED: frozenset({DraftStatus.PAYLOAD_ATTACHED, DraftStatus.ABANDONED}),
    DraftStatus.PAYLOAD_ATTACHED: frozenset(
        {DraftStatus.VALIDATED, DraftStatus.QUARANTINED, DraftStatus.ABANDONED}
    ),
    DraftStatus.VALIDATED: frozenset({DraftStatus.SEALED, DraftStatus.PAYLOAD_ATTACHED, DraftStatus.ABANDONED}),
    DraftStatus.QUARANTINED: frozenset({DraftStatus.PAYLOAD_ATTACHED, DraftStatus.ABANDONED}),
    DraftStatus.SEALED: frozenset(),
    DraftStatus.ABANDONED: frozenset(),
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def can_transition(src: DraftStatus, dst: DraftStatus) -> bool:
    return dst in TRANSITIONS.get(src, frozenset())


def transition(
    draft: EvidenceDraft,
    target: DraftStatus,
    *,
    reason: str = "",
    now: Optional[str] = None,
) -> EvidenceDraft:
    """Return a new draft in `target`, with a history event and a bumped version."""
    if not can_transition(draft.status, target):
        raise StateConflictError(
            f"draft {draft.draft_id} cannot move from {draft.status.value} to {target.value}",
            correlation_id=draft.correlation_id,
            details={"draft_id": draft.draft_id, "from": draft.status.value, "to": target.value},
        )
    event = TransitionEvent(to_status=target, at_utc=now or utc_now(), from_status=draft.status, reason=reason)
    logger.info("draft %s %s -> %s %s", draft.draft_id, draft.status.value, target.value, reason)
    return dataclasses.replace(draft, status=target, version=draft.version + 1, history=draft.history + (event,))


@dataclass(frozen=True)
class LifecycleOutcome:
    draft: EvidenceDraft
    validation: ValidationResult

    @property
    def quarantined(self) -> bool:
        return self.draft.status == DraftStatus.QUARANTINED


def open_draft(
    request: IntakeRequest,
    *,
    correlation_id: str,
    binding: BindingDecision,
    draft_id: str = "",
    now: Optional[str] = None,
) -> EvidenceDraft:
    opened_at = now or utc_now()
    enforce_intake(request, correlation_id, parse_utc_timestamp(opened_at))
    deadline = parse_utc_timestamp(request.resolution_deadline_utc)
    ext_ref = (request.external_reference_id or "").strip() or None
    draft = EvidenceDraft(
        draft_id=draft_id,
        tenant_id=request.tenant_id.strip(),
        ingestion_method=request.ingestion_method,
        evidence_type=request.evidence_type,
        declared_scope=request.declared_scope,
        purpose=request.purpose.strip(),
        provenance_source=request.provenance_source,
        correlation_id=correlation_id,
        external_reference_id=ext_ref,
        retention_policy=request.retention_policy or RetentionPolicy.SEVEN_YEARS,
        retention_custom_days=request.retention_custom_days,
        resolution_deadline_utc=deadline.isoformat() if deadline else None,
        history=(TransitionEvent(to_status=DraftStatus.DRAFT_CREATED, at_utc=opened_at, reason="intake accepted"),),
    )
    return apply_binding(draft, binding)


def _merge(current: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
    # A None value removes the field.
    out = dict(current)
    for k, v in incoming.items():
        if v is None:
            out.pop(k, None)
        else:
            out[k] = v
    return out


def attach_payload(
    draft: EvidenceDraft,
    submission: PayloadSubmission,
    *,
    now: Optional[str] = None,
) -> LifecycleOutcome:
    if not can_transition(draft.status, DraftStatus.PAYLOAD_ATTACHED):
        raise StateConflictError(
            f"cannot attach a payload to a {draft.status.value} draft",
            correlation_id=draft.correlation_id,
            details={"draft_id": draft.draft_id, "status": draft.status.value},
        )

    conflicts = identity_conflicts(draft, submission.payload)
    if conflicts:
        raise ValidationFailedError(
            conflicts,
            message="identity fields are fixed by the binding",
            correlation_id=draft.correlation_id,
        )

    ts = now or utc_now()
    merged = dataclasses.replace(
        draft,
        payload=_merge(draft.payload, submission.payload),
        attestation_notes=(
            submission.attestation_notes if submission.attestation_notes is not None else draft.attestation_notes
        ),
        receipt=_merge(draft.receipt, submission.receipt),
        attachments=submission.attachments or draft.attachments,
        quarantine_reason=None,
        quarantine_errors={},
    )
    attached = transition(merged, DraftStatus.PAYLOAD_ATTACHED, reason="payload attached", now=ts)

    result = validate_payload(attached)
    if result.valid:
        return LifecycleOutcome(transition(attached, DraftStatus.VALIDATED, reason="payload valid", now=ts), result)

    quarantined = transition(attached, DraftStatus.QUARANTINED, reason=QUARANTINE_REASON, now=ts)
    quarantined = dataclasses.replace(
        quarantined, quarantine_reason=QUARANTINE_REASON, quarantine_errors=dict(result.errors)
    )
    logger.warning("draft %s quarantined with %d error(s)", draft.draft_id, len(result.errors))
    return LifecycleOutcome(quarantined, result)


def assert_sealable(draft: EvidenceDraft) -> EvidenceDraft:
    if draft.status != DraftStatus.VALIDATED:
        raise StateConflictError(
            f"only VALIDATED drafts can be sealed; draft {draft.draft_id} is {draft.status.value}",
            correlation_id=draft.correlation_id,
            details={"draft_id": draft.draft_id, "status": draft.status.value},
        )
    return draft


def mark_sealed(draft: EvidenceDraft, display_id: str, *, now: Optional[str] = None) -> EvidenceDraft:
    return transition(assert_sealable(draft), DraftStatus.SEALED, reason=f"sealed as {display_id}", now=now)


def abandon(draft: EvidenceDraft, *, reason: str = "", now: Optional[str] = None) -> EvidenceDraft:
    return transition(draft, DraftStatus.ABANDONED, reason=reason or "abandoned", now=now)
