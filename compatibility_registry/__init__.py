from .registry import (
    BOM_ITEM_RULES,
    COMPATIBILITY_RULES,
    FIELD_SCHEMAS,
    IDENTITY_FIELDS,
    METHOD_PROFILES,
    REGISTRY_VERSION,
    SCOPE_TARGETS,
    allowed_evidence_types_for,
    allowed_scopes_for,
    audit_registry,
    compatibility_rule_for,
    field_schema_for,
    identity_fields_for,
    is_method_compatible,
    is_scope_compatible,
    method_profile_for,
    requires_external_reference,
    requires_target,
    target_entity_type_for,
    trust_level_for,
)

__all__ = [
    "BOM_ITEM_RULES",
    "COMPATIBILITY_RULES",
    "FIELD_SCHEMAS",
    "IDENTITY_FIELDS",
    "METHOD_PROFILES",
    "REGISTRY_VERSION",
    "SCOPE_TARGETS",
    "allowed_evidence_types_for",
    "allowed_scopes_for",
    "audit_registry",
    "compatibility_rule_for",
    "field_schema_for",
    "identity_fields_for",
    "is_method_compatible",
    "is_scope_compatible",
    "method_profile_for",
    "requires_external_reference",
    "requires_target",
    "target_entity_type_for",
    "trust_level_for",
]
