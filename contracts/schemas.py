from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Tuple, Type, TypeVar

from contracts.errors import RegistryConfigurationError

E = TypeVar("E", bound=Enum)


class IngestionMethod(str, Enum):
    MANUAL_ENTRY = "MANUAL_ENTRY"
    FILE_UPLOAD = "FILE_UPLOAD"
    API_PUSH_DIGEST = "API_PUSH_DIGEST"
    ERP_EXPORT_FILE = "ERP_EXPORT_FILE"
    ERP_API_PULL = "ERP_API_PULL"


class EvidenceType(str, Enum):
    SUPPLIER_MASTER = "SUPPLIER_MASTER"
    PRODUCT_MASTER = "PRODUCT_MASTER"
    BOM = "BOM"
    CERTIFICATE = "CERTIFICATE"
    TEST_REPORT = "TEST_REPORT"
    TRANSACTION_LOG = "TRANSACTION_LOG"
    OTHER = "OTHER"


class Scope(str, Enum):
    ENTIRE_ORG = "ENTIRE_ORG"
    LEGAL_ENTITY = "LEGAL_ENTITY"
    PRODUCT_FAMILY = "PRODUCT_FAMILY"
    PRODUCT = "PRODUCT"
    SUPPLIER = "SUPPLIER"
    SITE = "SITE"


class EntityType(str, Enum):
    SUPPLIER = "Supplier"
    SKU = "SKU"
    PRODUCT_FAMILY = "ProductFamily"
    LEGAL_ENTITY = "LegalEntity"
    SUPPLIER_SITE = "SupplierSite"


class BindingMode(str, Enum):
    BIND_EXISTING = "BIND_EXISTING"
    CREATE_NEW = "CREATE_NEW"
    DEFER = "DEFER"


class DraftStatus(str, Enum):
    DRAFT_CREATED = "DRAFT_CREATED"
    PAYLOAD_ATTACHED = "PAYLOAD_ATTACHED"
    VALIDATED = "VALIDATED"
    QUARANTINED = "QUARANTINED"
    SEALED = "SEALED"
    ABANDONED = "ABANDONED"


class ReconciliationStatus(str, Enum):
    BOUND = "BOUND"
    UNBOUND = "UNBOUND"
    PENDING_MATCH = "PENDING_MATCH"


class ReviewStatus(str, Enum):
    NOT_REVIEWED = "NOT_REVIEWED"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class TrustLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ProvenanceChannel(str, Enum):
    INTERNAL_USER = "INTERNAL_USER"
    SUPPLIER_EXTERNAL = "SUPPLIER_EXTERNAL"
    CONSULTANT_AUDITOR = "CONSULTANT_AUDITOR"
    SYSTEM_GENERATED = "SYSTEM_GENERATED"


class PayloadMode(str, Enum):
    CANONICAL_JSON = "CANONICAL_JSON"
    FILE_BYTES = "FILE_BYTES"
    DIGEST_ONLY = "DIGEST_ONLY"
    ERP_REF = "ERP_REF"


class RetentionPolicy(str, Enum):
    STANDARD_1_YEAR = "STANDARD_1_YEAR"
    THREE_YEARS = "3_YEARS"
    SEVEN_YEARS = "7_YEARS"
    CUSTOM = "CUSTOM"


class UnitOfMeasure(str, Enum):
    PCS = "pcs"
    KG = "kg"
    G = "g"
    M = "m"
    L = "l"


def coerce_enum(enum_cls: Type[E], value: Any, field_name: str) -> Optional[E]:
    """Map a raw identifier onto a closed enum; blanks are None, unknowns raise."""
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return enum_cls(s)
    except ValueError:
        raise RegistryConfigurationError(
            f"unknown {field_name}: {s}",
            details={"field": field_name, "value": s},
        ) from None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None


def parse_utc_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 text to an aware UTC datetime; naive values are taken as UTC, junk gives None."""
    s = str(value or "").strip()
    if not s:
        return None
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(s)
    except ValueError:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _enum_value(value: Optional[Enum]) -> Optional[str]:
    return None if value is None else value.value


# -----------------------------------------------------------------------------
# Registry facts
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class CompatibilityRule:
    evidence_type: EvidenceType
    allowed_scopes: frozenset[Scope] = frozenset()
    allowed_ingestion_methods: frozenset[IngestionMethod] = frozenset()
    allowed_binding_target_types: frozenset[EntityType] = frozenset()


@dataclass(frozen=True)
class ItemRules:
    collection_field: str
    identifier_fields: Tuple[str, str]
    quantity_field: str = "quantity"
    unit_field: str = "uom"
    allowed_units: frozenset[str] = frozenset()
    min_items: int = 1


@dataclass(frozen=True)
class FieldSchema:
    evidence_type: EvidenceType
    required: frozenset[str] = frozenset()
    optional: frozenset[str] = frozenset()
    identity_fields: Tuple[str, ...] = ()
    item_rules: Optional[ItemRules] = None

    @property
    def known_fields(self) -> frozenset[str]:
        return self.required | self.optional


@dataclass(frozen=True)
class MethodProfile:
    method: IngestionMethod
    allowed_evidence_types: frozenset[EvidenceType] = frozenset()
    requires_external_reference_id: bool = False
    payload_mode: PayloadMode = PayloadMode.CANONICAL_JSON
    trust_level: TrustLevel = TrustLevel.LOW
    source_system: str = ""
    requires_attestation: bool = False
    min_attachments: int = 0
    required_receipt_fields: Tuple[str, ...] = ()
    validates_structured_payload: bool = False


# -----------------------------------------------------------------------------
# Draft inputs
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class AttachmentMeta:
    file_name: str = ""
    size_bytes: int = 0
    sha256: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"file_name": self.file_name, "size_bytes": self.size_bytes, "sha256": self.sha256}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "AttachmentMeta":
        size = raw.get("size_bytes", 0)
        return cls(
            file_name=str(raw.get("file_name", "") or ""),
            size_bytes=size if isinstance(size, int) and not isinstance(size, bool) else -1,
            sha256=str(raw.get("sha256", "") or ""),
        )


@dataclass(frozen=True)
class IdentitySnapshot:
    entity_type: EntityType
    entity_id: str
    values: Tuple[Tuple[str, str], ...] = ()

    def as_dict(self) -> dict[str, str]:
        return dict(self.values)

    @classmethod
    def capture(
        cls,
        entity_type: EntityType,
        entity_id: str,
        source: Mapping[str, Any],
        fields: Tuple[str, ...],
    ) -> "IdentitySnapshot":
        values = tuple((f, str(source.get(f, "") or "").strip()) for f in fields)
        return cls(entity_type=entity_type, entity_id=str(entity_id), values=values)

    def to_dict(self) -> dict[str, Any]:
        return {"entity_type": self.entity_type.value, "entity_id": self.entity_id, "values": self.as_dict()}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "IdentitySnapshot":
        values = raw.get("values", {}) or {}
        return cls(
            entity_type=EntityType(raw["entity_type"]),
            entity_id=str(raw["entity_id"]),
            values=tuple((str(k), str(v)) for k, v in values.items()),
        )


@dataclass(frozen=True)
class IntakeRequest:
    tenant_id: str = ""
    ingestion_method: Optional[IngestionMethod] = None
    evidence_type: Optional[EvidenceType] = None
    declared_scope: Optional[Scope] = None
    purpose: str = ""
    provenance_source: Optional[ProvenanceChannel] = None
    binding_mode: Optional[BindingMode] = None
    bound_entity_id: Optional[str] = None
    binding_identity: Mapping[str, Any] = field(default_factory=dict)
    reconciliation_hint: Optional[str] = None
    resolution_deadline_utc: Optional[str] = None
    external_reference_id: Optional[str] = None
    retention_policy: Optional[RetentionPolicy] = RetentionPolicy.SEVEN_YEARS
    retention_custom_days: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], *, tenant_id: str = "") -> "IntakeRequest":
        identity = raw.get("binding_identity", {})
        custom_days = raw.get("retention_custom_days")
        return cls(
            tenant_id=str(raw.get("tenant_id") or tenant_id or ""),
            ingestion_method=coerce_enum(IngestionMethod, raw.get("ingestion_method"), "ingestion_method"),
            evidence_type=coerce_enum(EvidenceType, raw.get("evidence_type"), "evidence_type"),
            declared_scope=coerce_enum(Scope, raw.get("declared_scope"), "declared_scope"),
            purpose=str(raw.get("purpose", "") or ""),
            provenance_source=coerce_enum(ProvenanceChannel, raw.get("provenance_source"), "provenance_source"),
            binding_mode=coerce_enum(BindingMode, raw.get("binding_mode"), "binding_mode"),
            bound_entity_id=_opt_str(raw.get("bound_entity_id")),
            binding_identity=dict(identity) if isinstance(identity, Mapping) else {},
            reconciliation_hint=_opt_str(raw.get("reconciliation_hint")),
            resolution_deadline_utc=_opt_str(raw.get("resolution_deadline_utc")),
            external_reference_id=_opt_str(raw.get("external_reference_id")),
            retention_policy=coerce_enum(RetentionPolicy, raw.get("retention_policy", "7_YEARS"), "retention_policy"),
            retention_custom_days=custom_days if isinstance(custom_days, int) and not isinstance(custom_days, bool) else None,
        )


@dataclass(frozen=True)
class PayloadSubmission:
    payload: Mapping[str, Any] = field(default_factory=dict)
    attestation_notes: Optional[str] = None
    receipt: Mapping[str, Any] = field(default_factory=dict)
    attachments: Tuple[AttachmentMeta, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PayloadSubmission":
        payload = raw.get("payload", {})
        receipt = raw.get("receipt", {})
        attachments = raw.get("attachments", []) or []
        return cls(
            payload=dict(payload) if isinstance(payload, Mapping) else {},
            attestation_notes=_opt_str(raw.get("attestation_notes")),
            receipt=dict(receipt) if isinstance(receipt, Mapping) else {},
            attachments=tuple(AttachmentMeta.from_dict(a) for a in attachments if isinstance(a, Mapping)),
        )


# -----------------------------------------------------------------------------
# Draft and record
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class TransitionEvent:
    to_status: DraftStatus
    at_utc: str
    from_status: Optional[DraftStatus] = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_status": _enum_value(self.from_status),
            "to_status": self.to_status.value,
            "at_utc": self.at_utc,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TransitionEvent":
        return cls(
            to_status=DraftStatus(raw["to_status"]),
            at_utc=str(raw.get("at_utc", "")),
            from_status=DraftStatus(raw["from_status"]) if raw.get("from_status") else None,
            reason=str(raw.get("reason", "") or ""),
        )


@dataclass(frozen=True)
class EvidenceDraft:
    draft_id: str
    tenant_id: str
    ingestion_method: IngestionMethod
    evidence_type: EvidenceType
    declared_scope: Scope
    purpose: str
    provenance_source: ProvenanceChannel
    correlation_id: str
    binding_mode: BindingMode = BindingMode.DEFER
    bound_entity_id: Optional[str] = None
    binding_identity_snapshot: Optional[IdentitySnapshot] = None
    reconciliation_hint: Optional[str] = None
    resolution_deadline_utc: Optional[str] = None
    external_reference_id: Optional[str] = None
    retention_policy: RetentionPolicy = RetentionPolicy.SEVEN_YEARS
    retention_custom_days: Optional[int] = None
    payload: dict[str, Any] = field(default_factory=dict)
    attestation_notes: Optional[str] = None
    receipt: dict[str, Any] = field(default_factory=dict)
    attachments: Tuple[AttachmentMeta, ...] = ()
    status: DraftStatus = DraftStatus.DRAFT_CREATED
    quarantine_reason: Optional[str] = None
    quarantine_errors: dict[str, str] = field(default_factory=dict)
    version: int = 0
    history: Tuple[TransitionEvent, ...] = ()

    @property
    def is_bound(self) -> bool:
        return self.binding_identity_snapshot is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in (DraftStatus.SEALED, DraftStatus.ABANDONED)

    def to_dict(self) -> dict[str, Any]:
        snap = self.binding_identity_snapshot
        return {
            "draft_id": self.draft_id,
            "tenant_id": self.tenant_id,
            "ingestion_method": self.ingestion_method.value,
            "evidence_type": self.evidence_type.value,
            "declared_scope": self.declared_scope.value,
            "purpose": self.purpose,
            "provenance_source": self.provenance_source.value,
            "correlation_id": self.correlation_id,
            "binding_mode": self.binding_mode.value,
            "bound_entity_id": self.bound_entity_id,
            "binding_identity_snapshot": snap.to_dict() if snap is not None else None,
            "reconciliation_hint": self.reconciliation_hint,
            "resolution_deadline_utc": self.resolution_deadline_utc,
            "external_reference_id": self.external_reference_id,
            "retention_policy": self.retention_policy.value,
            "retention_custom_days": self.retention_custom_days,
            "payload": dict(self.payload),
            "attestation_notes": self.attestation_notes,
            "receipt": dict(self.receipt),
            "attachments": [a.to_dict() for a in self.attachments],
            "status": self.status.value,
            "quarantine_reason": self.quarantine_reason,
            "quarantine_errors": dict(self.quarantine_errors),
            "version": self.version,
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "EvidenceDraft":
        snap = raw.get("binding_identity_snapshot")
        return cls(
            draft_id=str(raw["draft_id"]),
            tenant_id=str(raw["tenant_id"]),
            ingestion_method=IngestionMethod(raw["ingestion_method"]),
            evidence_type=EvidenceType(raw["evidence_type"]),
            declared_scope=Scope(raw["declared_scope"]),
            purpose=str(raw.get("purpose", "")),
            provenance_source=ProvenanceChannel(raw["provenance_source"]),
            correlation_id=str(raw.get("correlation_id", "")),
            binding_mode=BindingMode(raw.get("binding_mode", BindingMode.DEFER.value)),
            bound_entity_id=raw.get("bound_entity_id"),
            binding_identity_snapshot=IdentitySnapshot.from_dict(snap) if snap else None,
            reconciliation_hint=raw.get("reconciliation_hint"),
            resolution_deadline_utc=raw.get("resolution_deadline_utc"),
            external_reference_id=raw.get("external_reference_id"),
            retention_policy=RetentionPolicy(raw.get("retention_policy", RetentionPolicy.SEVEN_YEARS.value)),
            retention_custom_days=raw.get("retention_custom_days"),
            payload=dict(raw.get("payload", {}) or {}),
            attestation_notes=raw.get("attestation_notes"),
            receipt=dict(raw.get("receipt", {}) or {}),
            attachments=tuple(AttachmentMeta.from_dict(a) for a in raw.get("attachments", []) or []),
            status=DraftStatus(raw.get("status", DraftStatus.DRAFT_CREATED.value)),
            quarantine_reason=raw.get("quarantine_reason"),
            quarantine_errors=dict(raw.get("quarantine_errors", {}) or {}),
            version=int(raw.get("version", 0)),
            history=tuple(TransitionEvent.from_dict(h) for h in raw.get("history", []) or []),
        )


@dataclass(frozen=True)
class HashScope:
    algorithm: str = "sha256"
    canonicalization: str = "json:sorted-keys,compact-separators,utf-8"
    payload_hash_covers: Tuple[str, ...] = ()
    metadata_hash_covers: Tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "canonicalization": self.canonicalization,
            "payload_hash_covers": list(self.payload_hash_covers),
            "metadata_hash_covers": list(self.metadata_hash_covers),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "HashScope":
        return cls(
            algorithm=str(raw.get("algorithm", "sha256")),
            canonicalization=str(raw.get("canonicalization", "")),
            payload_hash_covers=tuple(raw.get("payload_hash_covers", []) or []),
            metadata_hash_covers=tuple(raw.get("metadata_hash_covers", []) or []),
        )


@dataclass(frozen=True)
class EvidenceRecord:
    display_id: str
    draft_id: str
    tenant_id: str
    ingestion_method: IngestionMethod
    evidence_type: EvidenceType
    declared_scope: Scope
    purpose: str
    provenance_source: ProvenanceChannel
    binding_mode: BindingMode
    payload_hash: str
    metadata_hash: str
    hash_scope: HashScope
    sealed_at_utc: str
    retention_ends_at_utc: str
    trust_level: TrustLevel
    reconciliation_status: ReconciliationStatus
    correlation_id: str
    source_system: str = ""
    bound_entity_id: Optional[str] = None
    binding_identity_snapshot: Optional[IdentitySnapshot] = None
    reconciliation_hint: Optional[str] = None
    resolution_deadline_utc: Optional[str] = None
    external_reference_id: Optional[str] = None
    retention_policy: RetentionPolicy = RetentionPolicy.SEVEN_YEARS
    payload: dict[str, Any] = field(default_factory=dict)
    attestation_notes: Optional[str] = None
    receipt: dict[str, Any] = field(default_factory=dict)
    attachments: Tuple[AttachmentMeta, ...] = ()
    row_match_statuses: Tuple[ReconciliationStatus, ...] = ()
    review_status: ReviewStatus = ReviewStatus.NOT_REVIEWED

    @property
    def usable_for_calculations(self) -> bool:
        return self.reconciliation_status == ReconciliationStatus.BOUND

    def to_dict(self) -> dict[str, Any]:
        snap = self.binding_identity_snapshot
        return {
            "display_id": self.display_id,
            "draft_id": self.draft_id,
            "tenant_id": self.tenant_id,
            "ingestion_method": self.ingestion_method.value,
            "evidence_type": self.evidence_type.value,
            "declared_scope": self.declared_scope.value,
            "purpose": self.purpose,
            "provenance_source": self.provenance_source.value,
            "binding_mode": self.binding_mode.value,
            "payload_hash": self.payload_hash,
            "metadata_hash": self.metadata_hash,
            "hash_scope": self.hash_scope.to_dict(),
            "sealed_at_utc": self.sealed_at_utc,
            "retention_ends_at_utc": self.retention_ends_at_utc,
            "trust_level": self.trust_level.value,
            "reconciliation_status": self.reconciliation_status.value,
            "usable_for_calculations": self.usable_for_calculations,
            "correlation_id": self.correlation_id,
            "source_system": self.source_system,
            "bound_entity_id": self.bound_entity_id,
            "binding_identity_snapshot": snap.to_dict() if snap is not None else None,
            "reconciliation_hint": self.reconciliation_hint,
            "resolution_deadline_utc": self.resolution_deadline_utc,
            "external_reference_id": self.external_reference_id,
            "retention_policy": self.retention_policy.value,
            "payload": dict(self.payload),
            "attestation_notes": self.attestation_notes,
            "receipt": dict(self.receipt),
            "attachments": [a.to_dict() for a in self.attachments],
            "row_match_statuses": [s.value for s in self.row_match_statuses],
            "review_status": self.review_status.value,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "EvidenceRecord":
        snap = raw.get("binding_identity_snapshot")
        return cls(
            display_id=str(raw["display_id"]),
            draft_id=str(raw["draft_id"]),
            tenant_id=str(raw["tenant_id"]),
            ingestion_method=IngestionMethod(raw["ingestion_method"]),
            evidence_type=EvidenceType(raw["evidence_type"]),
            declared_scope=Scope(raw["declared_scope"]),
            purpose=str(raw.get("purpose", "")),
            provenance_source=ProvenanceChannel(raw["provenance_source"]),
            binding_mode=BindingMode(raw["binding_mode"]),
            payload_hash=str(raw["payload_hash"]),
            metadata_hash=str(raw["metadata_hash"]),
            hash_scope=HashScope.from_dict(raw.get("hash_scope", {}) or {}),
            sealed_at_utc=str(raw["sealed_at_utc"]),
            retention_ends_at_utc=str(raw.get("retention_ends_at_utc", "")),
            trust_level=TrustLevel(raw["trust_level"]),
            reconciliation_status=ReconciliationStatus(raw["reconciliation_status"]),
            correlation_id=str(raw.get("correlation_id", "")),
            source_system=str(raw.get("source_system", "") or ""),
            bound_entity_id=raw.get("bound_entity_id"),
            binding_identity_snapshot=IdentitySnapshot.from_dict(snap) if snap else None,
            reconciliation_hint=raw.get("reconciliation_hint"),
            resolution_deadline_utc=raw.get("resolution_deadline_utc"),
            external_reference_id=raw.get("external_reference_id"),
            retention_policy=RetentionPolicy(raw.get("retention_policy", RetentionPolicy.SEVEN_YEARS.value)),
            payload=dict(raw.get("payload", {}) or {}),
            attestation_notes=raw.get("attestation_notes"),
            receipt=dict(raw.get("receipt", {}) or {}),
            attachments=tuple(AttachmentMeta.from_dict(a) for a in raw.get("attachments", []) or []),
            row_match_statuses=tuple(ReconciliationStatus(s) for s in raw.get("row_match_statuses", []) or []),
            review_status=ReviewStatus(raw.get("review_status", ReviewStatus.NOT_REVIEWED.value)),
        )
