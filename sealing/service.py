from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from adapter_gateway.contract import AdapterGateway, unwrap, verify_gateway
from binding_resolver import reconciliation_status, row_match_statuses
from compatibility_registry import method_profile_for, trust_level_for
from contracts.errors import IdempotencyConflictError
from contracts.schemas import DraftStatus, EvidenceDraft, EvidenceRecord, RetentionPolicy
from draft_lifecycle import assert_sealable, mark_sealed
from sealing.canonical import HASH_SCOPE, compute_metadata_hash, compute_payload_hash

logger = logging.getLogger(__name__)

DISPLAY_ID_PREFIX = "EV"

_RETENTION_YEARS = {
    RetentionPolicy.STANDARD_1_YEAR: 1,
    RetentionPolicy.THREE_YEARS: 3,
    RetentionPolicy.SEVEN_YEARS: 7,
}


def _utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def _add_years(ts: datetime, years: int) -> datetime:
    year = ts.year + years
    day = min(ts.day, calendar.monthrange(year, ts.month)[1])
    return ts.replace(year=year, day=day)


def retention_ends_at(sealed_at: datetime, policy: RetentionPolicy, custom_days: Optional[int] = None) -> datetime:
    if policy == RetentionPolicy.CUSTOM:
        return sealed_at + timedelta(days=int(custom_days or 0))
    return _add_years(sealed_at, _RETENTION_YEARS[policy])


def format_display_id(sequence: int) -> str:
    return f"{DISPLAY_ID_PREFIX}-{int(sequence):06d}"


@dataclass(frozen=True)
class SealResult:
    record: EvidenceRecord
    draft: EvidenceDraft


def build_record(draft: EvidenceDraft, *, display_id: str, sealed_at: datetime) -> EvidenceRecord:
    profile = method_profile_for(draft.ingestion_method)
    return EvidenceRecord(
        display_id=display_id,
        draft_id=draft.draft_id,
        tenant_id=draft.tenant_id,
        ingestion_method=draft.ingestion_method,
        evidence_type=draft.evidence_type,
        declared_scope=draft.declared_scope,
        purpose=draft.purpose,
        provenance_source=draft.provenance_source,
        binding_mode=draft.binding_mode,
        payload_hash=compute_payload_hash(draft),
        metadata_hash=compute_metadata_hash(draft),
        hash_scope=HASH_SCOPE,
        sealed_at_utc=sealed_at.isoformat(),
        retention_ends_at_utc=retention_ends_at(sealed_at, draft.retention_policy, draft.retention_custom_days).isoformat(),
        trust_level=trust_level_for(draft.ingestion_method),
        reconciliation_status=reconciliation_status(draft),
        correlation_id=draft.correlation_id,
        source_system=profile.source_system,
        bound_entity_id=draft.bound_entity_id,
        binding_identity_snapshot=draft.binding_identity_snapshot,
        reconciliation_hint=draft.reconciliation_hint,
        resolution_deadline_utc=draft.resolution_deadline_utc,
        external_reference_id=draft.external_reference_id,
        retention_policy=draft.retention_policy,
        payload=dict(draft.payload),
        attestation_notes=draft.attestation_notes,
        receipt=dict(draft.receipt),
        attachments=draft.attachments,
        row_match_statuses=row_match_statuses(draft.payload),
    )


class SealingService:
    """
    Turns a VALIDATED draft into an immutable EvidenceRecord.

    The gateway's seal_draft is the single atomic step: it reserves the
    (tenant, external_reference_id) key, re-checks the draft version and
    writes record and archived draft together. Any failure leaves the draft
    VALIDATED.
    """

    def __init__(self, gateway: AdapterGateway, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._gateway = verify_gateway(gateway)
        self._clock = clock or _utc_clock

    def _conflict(self, draft: EvidenceDraft, correlation_id: str) -> IdempotencyConflictError:
        key = draft.external_reference_id
        existing = unwrap(
            self._gateway.find_record_by_reference(draft.tenant_id, key, correlation_id), correlation_id
        )
        display_id = existing.get("display_id") if existing else None
        logger.warning(
            "idempotency conflict tenant=%s external_reference_id=%s existing=%s correlation_id=%s",
            draft.tenant_id,
            key,
            display_id,
            correlation_id,
        )
        msg = f"external reference {key} is already sealed for tenant {draft.tenant_id}"
        return IdempotencyConflictError(
            msg,
            correlation_id=correlation_id,
            details={"external_reference_id": key, "existing_display_id": display_id, "draft_id": draft.draft_id},
        )

    def seal(self, draft: EvidenceDraft, *, correlation_id: str) -> SealResult:
        if draft.status == DraftStatus.SEALED and draft.external_reference_id:
            raise self._conflict(draft, correlation_id)
        assert_sealable(draft)

        sealed_at = self._clock()
        seq = unwrap(self._gateway.next_display_sequence(draft.tenant_id, correlation_id), correlation_id)
        display_id = format_display_id(seq)
        record = build_record(draft, display_id=display_id, sealed_at=sealed_at)
        sealed_draft = mark_sealed(draft, display_id, now=sealed_at.isoformat())

        try:
            unwrap(
                self._gateway.seal_draft(
                    draft.draft_id,
                    draft.external_reference_id,
                    record.to_dict(),
                    sealed_draft.to_dict(),
                    draft.version,
                    correlation_id,
                ),
                correlation_id,
            )
        except IdempotencyConflictError as exc:
            raise self._conflict(draft, correlation_id) from exc

        logger.info(
            "sealed draft %s as %s payload_hash=%s reconciliation=%s",
            draft.draft_id,
            display_id,
            record.payload_hash,
            record.reconciliation_status.value,
        )
        return SealResult(record=record, draft=sealed_draft)
