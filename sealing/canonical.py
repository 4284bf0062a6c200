from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

from contracts.schemas import EvidenceDraft, HashScope

PAYLOAD_HASH_COVERS = (
    "envelope.tenant_id",
    "envelope.evidence_type",
    "envelope.declared_scope",
    "payload",
)
METADATA_HASH_COVERS = (
    "ingestion_method",
    "provenance_source",
    "purpose",
    "binding_mode",
    "bound_entity_id",
    "binding_identity_snapshot",
    "reconciliation_hint",
    "resolution_deadline_utc",
    "external_reference_id",
    "attestation_notes",
    "receipt",
    "attachments",
    "retention_policy",
    "retention_custom_days",
)

HASH_SCOPE = HashScope(payload_hash_covers=PAYLOAD_HASH_COVERS, metadata_hash_covers=METADATA_HASH_COVERS)


def canonical_json(value: Any) -> str:
    """Sorted keys, compact separators, no NaN; key insertion order never matters."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def payload_document(draft: EvidenceDraft) -> dict[str, Any]:
    return {
        "envelope": {
            "tenant_id": draft.tenant_id,
            "evidence_type": draft.evidence_type.value,
            "declared_scope": draft.declared_scope.value,
        },
        "payload": dict(draft.payload),
    }


def metadata_document(draft: EvidenceDraft) -> dict[str, Any]:
    full: Mapping[str, Any] = draft.to_dict()
    return {k: full.get(k) for k in METADATA_HASH_COVERS}


def compute_payload_hash(draft: EvidenceDraft) -> str:
    return sha256_hex(canonical_json(payload_document(draft)))


def compute_metadata_hash(draft: EvidenceDraft) -> str:
    return sha256_hex(canonical_json(metadata_document(draft)))
