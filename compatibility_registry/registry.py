from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Tuple, Type, TypeVar

from contracts.errors import RegistryConfigurationError
from contracts.schemas import (
    CompatibilityRule,
    EntityType,
    EvidenceType,
    FieldSchema,
    IngestionMethod,
    ItemRules,
    MethodProfile,
    PayloadMode,
    Scope,
    TrustLevel,
    UnitOfMeasure,
    coerce_enum,
)

E = TypeVar("E")

REGISTRY_VERSION = "2.0.0"

# Digest-only and ERP methods carry an external reference id; it doubles as the
# tenant-scoped idempotency key at seal time.
METHOD_PROFILES: Mapping[IngestionMethod, MethodProfile] = {
    IngestionMethod.MANUAL_ENTRY: MethodProfile(
        method=IngestionMethod.MANUAL_ENTRY,
        allowed_evidence_types=frozenset(
            {EvidenceType.SUPPLIER_MASTER, EvidenceType.PRODUCT_MASTER, EvidenceType.BOM}
        ),
        requires_external_reference_id=False,
        payload_mode=PayloadMode.CANONICAL_JSON,
        trust_level=TrustLevel.LOW,
        source_system="MANUAL_ENTRY",
        requires_attestation=True,
        validates_structured_payload=True,
    ),
    IngestionMethod.FILE_UPLOAD: MethodProfile(
        method=IngestionMethod.FILE_UPLOAD,
        allowed_evidence_types=frozenset(
            {
                EvidenceType.SUPPLIER_MASTER,
                EvidenceType.PRODUCT_MASTER,
                EvidenceType.BOM,
                EvidenceType.CERTIFICATE,
                EvidenceType.TEST_REPORT,
                EvidenceType.OTHER,
            }
        ),
        requires_external_reference_id=False,
        payload_mode=PayloadMode.FILE_BYTES,
        trust_level=TrustLevel.MEDIUM,
        source_system="FILE_UPLOAD",
        min_attachments=1,
    ),
    IngestionMethod.API_PUSH_DIGEST: MethodProfile(
        method=IngestionMethod.API_PUSH_DIGEST,
        allowed_evidence_types=frozenset(
            {
                EvidenceType.SUPPLIER_MASTER,
                EvidenceType.PRODUCT_MASTER,
                EvidenceType.BOM,
                EvidenceType.TRANSACTION_LOG,
            }
        ),
        requires_external_reference_id=True,
        payload_mode=PayloadMode.DIGEST_ONLY,
        trust_level=TrustLevel.MEDIUM,
        source_system="API_PUSH",
        required_receipt_fields=("payload_digest_sha256", "received_at_utc"),
    ),
    IngestionMethod.ERP_EXPORT_FILE: MethodProfile(
        method=IngestionMethod.ERP_EXPORT_FILE,
        allowed_evidence_types=frozenset(
            {EvidenceType.SUPPLIER_MASTER, EvidenceType.PRODUCT_MASTER, EvidenceType.BOM}
        ),
        requires_external_reference_id=True,
        payload_mode=PayloadMode.FILE_BYTES,
        trust_level=TrustLevel.HIGH,
        source_system="ERP_EXPORT",
        min_attachments=1,
        required_receipt_fields=("erp_instance_name", "snapshot_datetime_utc", "integration_source_id"),
    ),
    IngestionMethod.ERP_API_PULL: MethodProfile(
        method=IngestionMethod.ERP_API_PULL,
        allowed_evidence_types=frozenset(
            {EvidenceType.SUPPLIER_MASTER, EvidenceType.PRODUCT_MASTER, EvidenceType.BOM}
        ),
        requires_external_reference_id=True,
        payload_mode=PayloadMode.ERP_REF,
        trust_level=TrustLevel.HIGH,
        source_system="ERP_API",
        required_receipt_fields=("connector_id", "sync_run_id"),
        validates_structured_payload=True,
    ),
}

SCOPE_TARGETS: Mapping[Scope, Optional[EntityType]] = {
    Scope.ENTIRE_ORG: None,
    Scope.LEGAL_ENTITY: EntityType.LEGAL_ENTITY,
    Scope.PRODUCT_FAMILY: EntityType.PRODUCT_FAMILY,
    Scope.PRODUCT: EntityType.SKU,
    Scope.SUPPLIER: EntityType.SUPPLIER,
    Scope.SITE: EntityType.SUPPLIER_SITE,
}

IDENTITY_FIELDS: Mapping[EntityType, Tuple[str, ...]] = {
    EntityType.SUPPLIER: ("supplier_name", "country_code"),
    EntityType.SKU: ("sku", "product_name"),
    EntityType.PRODUCT_FAMILY: ("family_code", "family_name"),
    EntityType.LEGAL_ENTITY: ("legal_name", "country_code"),
    EntityType.SUPPLIER_SITE: ("site_name", "country_code"),
}

_SCOPE_MATRIX: Mapping[EvidenceType, Tuple[Tuple[Scope, ...], Tuple[EntityType, ...]]] = {
    EvidenceType.SUPPLIER_MASTER: ((Scope.SUPPLIER,), (EntityType.SUPPLIER,)),
    EvidenceType.PRODUCT_MASTER: (
        (Scope.PRODUCT, Scope.PRODUCT_FAMILY),
        (EntityType.SKU, EntityType.PRODUCT_FAMILY),
    ),
    EvidenceType.BOM: (
        (Scope.PRODUCT, Scope.PRODUCT_FAMILY),
        (EntityType.SKU, EntityType.PRODUCT_FAMILY),
    ),
    EvidenceType.CERTIFICATE: (
        (Scope.SUPPLIER, Scope.PRODUCT, Scope.PRODUCT_FAMILY, Scope.LEGAL_ENTITY, Scope.SITE),
        (
            EntityType.SUPPLIER,
            EntityType.SKU,
            EntityType.PRODUCT_FAMILY,
            EntityType.LEGAL_ENTITY,
            EntityType.SUPPLIER_SITE,
        ),
    ),
    EvidenceType.TEST_REPORT: (
        (Scope.SUPPLIER, Scope.PRODUCT, Scope.PRODUCT_FAMILY, Scope.SITE),
        (EntityType.SUPPLIER, EntityType.SKU, EntityType.PRODUCT_FAMILY, EntityType.SUPPLIER_SITE),
    ),
    EvidenceType.TRANSACTION_LOG: (
        (Scope.LEGAL_ENTITY, Scope.ENTIRE_ORG),
        (EntityType.LEGAL_ENTITY,),
    ),
    EvidenceType.OTHER: (
        (Scope.ENTIRE_ORG, Scope.LEGAL_ENTITY, Scope.SUPPLIER, Scope.PRODUCT, Scope.PRODUCT_FAMILY),
        (EntityType.LEGAL_ENTITY, EntityType.SUPPLIER, EntityType.SKU, EntityType.PRODUCT_FAMILY),
    ),
}


def _methods_allowing(evidence_type: EvidenceType) -> frozenset[IngestionMethod]:
    return frozenset(m for m, p in METHOD_PROFILES.items() if evidence_type in p.allowed_evidence_types)


COMPATIBILITY_RULES: Mapping[EvidenceType, CompatibilityRule] = {
    et: CompatibilityRule(
        evidence_type=et,
        allowed_scopes=frozenset(scopes),
        allowed_ingestion_methods=_methods_allowing(et),
        allowed_binding_target_types=frozenset(targets),
    )
    for et, (scopes, targets) in _SCOPE_MATRIX.items()
}

BOM_ITEM_RULES = ItemRules(
    collection_field="components",
    identifier_fields=("component_sku_id", "component_sku_code"),
    quantity_field="quantity",
    unit_field="uom",
    allowed_units=frozenset(u.value for u in UnitOfMeasure),
    min_items=1,
)

FIELD_SCHEMAS: Mapping[EvidenceType, FieldSchema] = {
    EvidenceType.SUPPLIER_MASTER: FieldSchema(
        evidence_type=EvidenceType.SUPPLIER_MASTER,
        required=frozenset({"supplier_name", "country_code"}),
        optional=frozenset(
            {
                "supplier_code",
                "vat_number",
                "lei_code",
                "duns_number",
                "address",
                "primary_contact_email",
                "primary_contact_name",
            }
        ),
        identity_fields=IDENTITY_FIELDS[EntityType.SUPPLIER],
    ),
    EvidenceType.PRODUCT_MASTER: FieldSchema(
        evidence_type=EvidenceType.PRODUCT_MASTER,
        required=frozenset({"product_name", "sku"}),
        optional=frozenset({"uom", "weight", "hs_code", "category", "description", "external_product_id"}),
        identity_fields=IDENTITY_FIELDS[EntityType.SKU],
    ),
    EvidenceType.BOM: FieldSchema(
        evidence_type=EvidenceType.BOM,
        required=frozenset({"components"}),
        optional=frozenset({"parent_sku_id", "parent_sku_code_hint", "bom_version", "effective_date"}),
        item_rules=BOM_ITEM_RULES,
    ),
}


def _require(enum_cls: Type[E], value: Any, field_name: str) -> E:
    out = coerce_enum(enum_cls, value, field_name)  # type: ignore[arg-type]
    if out is None:
        raise RegistryConfigurationError(f"{field_name} is required", details={"field": field_name})
    return out  # type: ignore[return-value]


def _lookup(table: Mapping[Any, E], key: Any, field_name: str) -> E:
    try:
        return table[key]
    except KeyError:
        raise RegistryConfigurationError(
            f"{field_name} {getattr(key, 'value', key)} missing from registry",
            details={"field": field_name},
        ) from None


def method_profile_for(method: IngestionMethod | str) -> MethodProfile:
    return _lookup(METHOD_PROFILES, _require(IngestionMethod, method, "ingestion_method"), "ingestion_method")


def compatibility_rule_for(evidence_type: EvidenceType | str) -> CompatibilityRule:
    return _lookup(COMPATIBILITY_RULES, _require(EvidenceType, evidence_type, "evidence_type"), "evidence_type")


def allowed_scopes_for(evidence_type: EvidenceType | str) -> frozenset[Scope]:
    return compatibility_rule_for(evidence_type).allowed_scopes


def is_scope_compatible(evidence_type: EvidenceType | str, scope: Scope | str) -> bool:
    s = _require(Scope, scope, "declared_scope")
    return s in allowed_scopes_for(evidence_type)


def allowed_evidence_types_for(method: IngestionMethod | str) -> frozenset[EvidenceType]:
    return method_profile_for(method).allowed_evidence_types


def is_method_compatible(method: IngestionMethod | str, evidence_type: EvidenceType | str) -> bool:
    et = _require(EvidenceType, evidence_type, "evidence_type")
    return et in allowed_evidence_types_for(method)


def target_entity_type_for(scope: Scope | str) -> Optional[EntityType]:
    return _lookup(SCOPE_TARGETS, _require(Scope, scope, "declared_scope"), "declared_scope")


def requires_target(scope: Scope | str) -> bool:
    return target_entity_type_for(scope) is not None


def field_schema_for(evidence_type: EvidenceType | str) -> Optional[FieldSchema]:
    return FIELD_SCHEMAS.get(_require(EvidenceType, evidence_type, "evidence_type"))


def identity_fields_for(entity_type: EntityType | str) -> Tuple[str, ...]:
    return _lookup(IDENTITY_FIELDS, _require(EntityType, entity_type, "entity_type"), "entity_type")


def trust_level_for(method: IngestionMethod | str) -> TrustLevel:
    return method_profile_for(method).trust_level


def requires_external_reference(method: IngestionMethod | str) -> bool:
    return method_profile_for(method).requires_external_reference_id


def _unique_sorted(items: Iterable[str]) -> Tuple[str, ...]:
    return tuple(sorted({s for s in items if isinstance(s, str) and s.strip()}))


def audit_registry() -> Tuple[str, ...]:
    """
    Cross-check the static tables. Returns problem codes, empty when consistent:
      - every enum member has a table entry
      - every allowed binding target is the target of some allowed scope
      - rule method sets agree with method profiles
      - schema identity fields are declared as schema fields
    """
    problems: list[str] = []

    for m in IngestionMethod:
        if m not in METHOD_PROFILES:
            problems.append(f"method_missing:{m.value}")
    for et in EvidenceType:
        if et not in COMPATIBILITY_RULES:
            problems.append(f"evidence_type_missing:{et.value}")
    for s in Scope:
        if s not in SCOPE_TARGETS:
            problems.append(f"scope_missing:{s.value}")
    for ent in EntityType:
        if ent not in IDENTITY_FIELDS:
            problems.append(f"identity_fields_missing:{ent.value}")

    for et, rule in COMPATIBILITY_RULES.items():
        reachable = {SCOPE_TARGETS.get(s) for s in rule.allowed_scopes} - {None}
        for target in rule.allowed_binding_target_types - reachable:
            problems.append(f"unreachable_target:{et.value}:{target.value}")
        if rule.allowed_ingestion_methods != _methods_allowing(et):
            problems.append(f"method_set_drift:{et.value}")

    for et, schema in FIELD_SCHEMAS.items():
        for f in set(schema.identity_fields) - schema.known_fields:
            problems.append(f"identity_field_undeclared:{et.value}:{f}")

    return _unique_sorted(problems)
