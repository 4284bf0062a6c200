from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Tuple

from adapter_gateway.contract import AdapterGateway, EntityStore, unwrap, verify_entity_store
from adapter_gateway.retry import RetryPolicy, call_with_retry
from compatibility_registry import BOM_ITEM_RULES, identity_fields_for, requires_target, target_entity_type_for
from contracts.errors import (
    AdapterContractViolationError,
    ReconciliationRequiredError,
    StateConflictError,
    ValidationFailedError,
)
from contracts.schemas import (
    BindingMode,
    EntityType,
    EvidenceDraft,
    EvidenceRecord,
    IdentitySnapshot,
    IntakeRequest,
    ReconciliationStatus,
)

logger = logging.getLogger(__name__)


def _clean(value: Any) -> str:
    return str(value or "").strip()


@dataclass(frozen=True)
class BindingDecision:
    mode: BindingMode
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    snapshot: Optional[IdentitySnapshot] = None
    reconciliation_hint: Optional[str] = None

    @property
    def bound(self) -> bool:
        return self.snapshot is not None


class BindingResolver:
    """
    Resolves how a draft attaches to a master-data entity.

    Entity reads and the create+confirm step go through the gateway with
    bounded retries; anything the gateway writes is only trusted once it has
    been read back.
    """

    def __init__(
        self,
        gateway: AdapterGateway,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._gateway = gateway
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._stores: dict[EntityType, EntityStore] = {}
        for entity_type in EntityType:
            store = gateway.entity_store(entity_type)
            if store is not None:
                self._stores[entity_type] = verify_entity_store(store, entity_type)

    def _store(self, entity_type: EntityType) -> EntityStore:
        store = self._stores.get(entity_type)
        if store is None:
            return verify_entity_store(None, entity_type)
        return store

    def _read(self, entity_type: EntityType, entity_id: str, correlation_id: str) -> Optional[Mapping[str, Any]]:
        store = self._store(entity_type)
        return call_with_retry(
            lambda: unwrap(store.read(entity_id, correlation_id), correlation_id),
            self._retry,
            label=f"read {entity_type.value}/{entity_id}",
            sleep=self._sleep,
        )

    def search(self, entity_type: EntityType, query: str, *, correlation_id: str) -> list[dict[str, Any]]:
        store = self._store(entity_type)
        found = call_with_retry(
            lambda: unwrap(store.search(query, correlation_id), correlation_id),
            self._retry,
            label=f"search {entity_type.value}",
            sleep=self._sleep,
        )
        return [dict(r) for r in (found or [])]

    def _snapshot(
        self,
        entity_type: EntityType,
        entity_id: str,
        source: Mapping[str, Any],
        correlation_id: str,
    ) -> IdentitySnapshot:
        fields = identity_fields_for(entity_type)
        missing = {f"binding_identity.{f}": "Required" for f in fields if not _clean(source.get(f))}
        if missing:
            raise ValidationFailedError(
                missing,
                message=f"{entity_type.value} identity is incomplete",
                correlation_id=correlation_id,
            )
        return IdentitySnapshot.capture(entity_type, entity_id, source, fields)

    def bind_existing(
        self,
        entity_type: EntityType,
        entity_id: str,
        identity: Optional[Mapping[str, Any]] = None,
        *,
        correlation_id: str,
        mode: BindingMode = BindingMode.BIND_EXISTING,
    ) -> BindingDecision:
        entity_id = _clean(entity_id)
        if not entity_id:
            raise ValidationFailedError(
                {"bound_entity_id": "Please select an entity"}, correlation_id=correlation_id
            )
        source = identity
        if not source:
            source = self._read(entity_type, entity_id, correlation_id)
            if source is None:
                raise ValidationFailedError(
                    {"bound_entity_id": f"{entity_type.value} {entity_id} not found"},
                    correlation_id=correlation_id,
                )
        snapshot = self._snapshot(entity_type, entity_id, source, correlation_id)
        logger.info("bound %s/%s correlation_id=%s", entity_type.value, entity_id, correlation_id)
        return BindingDecision(mode=mode, entity_type=entity_type, entity_id=entity_id, snapshot=snapshot)

    def create_entity(
        self,
        entity_type: EntityType,
        stub: Mapping[str, Any],
        *,
        correlation_id: str,
    ) -> BindingDecision:
        fields = identity_fields_for(entity_type)
        missing = {f: "Required" for f in fields if not _clean(stub.get(f))}
        if missing:
            raise ValidationFailedError(
                missing, message=f"{entity_type.value} stub is incomplete", correlation_id=correlation_id
            )

        store = self._store(entity_type)
        created = call_with_retry(
            lambda: unwrap(store.create(dict(stub), correlation_id), correlation_id),
            self._retry,
            label=f"create {entity_type.value}",
            sleep=self._sleep,
        )
        entity_id = _clean(created.get("id")) if isinstance(created, Mapping) else ""
        if not entity_id:
            raise AdapterContractViolationError(
                f"{entity_type.value} create returned no id", correlation_id=correlation_id
            )

        confirmed = self._read(entity_type, entity_id, correlation_id)
        if confirmed is None:
            raise AdapterContractViolationError(
                f"{entity_type.value} {entity_id} was not readable after create",
                correlation_id=correlation_id,
                details={"entity_id": entity_id},
            )
        logger.info("created %s/%s correlation_id=%s", entity_type.value, entity_id, correlation_id)
        return self.bind_existing(
            entity_type, entity_id, confirmed, correlation_id=correlation_id, mode=BindingMode.CREATE_NEW
        )

    @staticmethod
    def defer(hint: Optional[str] = None) -> BindingDecision:
        return BindingDecision(mode=BindingMode.DEFER, reconciliation_hint=_clean(hint) or None)

    def resolve(self, request: IntakeRequest, *, correlation_id: str) -> BindingDecision:
        """Turn a validated intake request into a binding decision."""
        scope = request.declared_scope
        mode = request.binding_mode or BindingMode.DEFER
        if scope is None or not requires_target(scope) or mode == BindingMode.DEFER:
            return self.defer(request.reconciliation_hint)
        entity_type = target_entity_type_for(scope)
        return self.bind_existing(
            entity_type,
            request.bound_entity_id or "",
            request.binding_identity or None,
            correlation_id=correlation_id,
            mode=mode,
        )


def apply_binding(draft: EvidenceDraft, decision: BindingDecision) -> EvidenceDraft:
    if draft.is_bound:
        same = (
            decision.snapshot is not None
            and decision.snapshot.entity_type == draft.binding_identity_snapshot.entity_type
            and decision.entity_id == draft.bound_entity_id
        )
        if same:
            return draft
        raise StateConflictError(
            f"draft {draft.draft_id} is already bound to {draft.bound_entity_id}; binding is write-once",
            correlation_id=draft.correlation_id,
        )
    return dataclasses.replace(
        draft,
        binding_mode=decision.mode,
        bound_entity_id=decision.entity_id,
        binding_identity_snapshot=decision.snapshot,
        reconciliation_hint=decision.reconciliation_hint,
    )


def identity_conflicts(draft: EvidenceDraft, payload: Mapping[str, Any]) -> dict[str, str]:
    """Field errors for payload values that contradict the frozen identity snapshot."""
    snap = draft.binding_identity_snapshot
    if snap is None:
        return {}
    errors: dict[str, str] = {}
    for name, frozen in snap.values:
        if name in payload and _clean(payload.get(name)) != frozen:
            errors[name] = f"{name} is fixed by the bound {snap.entity_type.value} ({frozen!r}) and cannot change"
    return errors


def row_match_statuses(payload: Mapping[str, Any]) -> Tuple[ReconciliationStatus, ...]:
    rows = payload.get(BOM_ITEM_RULES.collection_field)
    if not isinstance(rows, (list, tuple)):
        return ()
    id_field = BOM_ITEM_RULES.identifier_fields[0]
    return tuple(
        ReconciliationStatus.BOUND
        if isinstance(row, Mapping) and _clean(row.get(id_field))
        else ReconciliationStatus.PENDING_MATCH
        for row in rows
    )


def reconciliation_status(draft: EvidenceDraft) -> ReconciliationStatus:
    if draft.binding_mode == BindingMode.DEFER or not draft.is_bound:
        return ReconciliationStatus.UNBOUND
    if ReconciliationStatus.PENDING_MATCH in row_match_statuses(draft.payload):
        return ReconciliationStatus.PENDING_MATCH
    return ReconciliationStatus.BOUND


def select_row_identifier(
    row: Mapping[str, Any],
    *,
    entity_id: Optional[str] = None,
    code: Optional[str] = None,
) -> dict[str, Any]:
    id_field, code_field = BOM_ITEM_RULES.identifier_fields
    entity_id, code = _clean(entity_id), _clean(code)
    if bool(entity_id) == bool(code):
        raise ValueError(f"exactly one of {id_field} or {code_field} must be given")
    out = {k: v for k, v in row.items() if k not in (id_field, code_field)}
    if entity_id:
        out[id_field] = entity_id
    else:
        out[code_field] = code
    return out


def assert_usable(record: EvidenceRecord) -> EvidenceRecord:
    if not record.usable_for_calculations:
        raise ReconciliationRequiredError(
            f"{record.display_id} is {record.reconciliation_status.value}; reconcile before using it in calculations",
            correlation_id=record.correlation_id,
            details={"display_id": record.display_id, "reconciliation_status": record.reconciliation_status.value},
        )
    return record
