from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, Iterable, Mapping, Optional

from adapter_gateway.contract import GatewayResponse
from contracts.errors import ErrorCode
from contracts.schemas import DraftStatus, EntityType


def _matches(row: Mapping[str, Any], needle: str) -> bool:
    return any(isinstance(v, str) and needle in v.lower() for v in row.values())


class InMemoryEntityStore:
    def __init__(self, entity_type: EntityType, lock: threading.RLock) -> None:
        self.entity_type = entity_type
        self._lock = lock
        self._rows: dict[str, dict[str, Any]] = {}

    def create(self, stub: Mapping[str, Any], correlation_id: str) -> GatewayResponse:
        entity_id = f"{self.entity_type.value.lower()}_{uuid.uuid4().hex[:12]}"
        row = {**copy.deepcopy(dict(stub)), "id": entity_id, "entity_type": self.entity_type.value}
        with self._lock:
            self._rows[entity_id] = row
        return GatewayResponse(correlation_id=correlation_id, value=copy.deepcopy(row))

    def read(self, entity_id: str, correlation_id: str) -> GatewayResponse:
        with self._lock:
            row = self._rows.get(entity_id)
        return GatewayResponse(correlation_id=correlation_id, value=copy.deepcopy(row) if row else None)

    def search(self, query: str, correlation_id: str) -> GatewayResponse:
        needle = (query or "").strip().lower()
        with self._lock:
            rows = [copy.deepcopy(r) for _, r in sorted(self._rows.items()) if not needle or _matches(r, needle)]
        return GatewayResponse(correlation_id=correlation_id, value=rows)


class InMemoryAdapterGateway:
    """
    Process-local gateway. A single lock serialises every write so the
    version compare-and-set and the idempotency reservation in seal_draft
    happen as one step.
    """

    def __init__(self, entity_types: Optional[Iterable[EntityType]] = None) -> None:
        self._lock = threading.RLock()
        self._drafts: dict[str, dict[str, Any]] = {}
        self._records: dict[tuple[str, str], dict[str, Any]] = {}
        self._references: dict[tuple[str, str], str] = {}
        self._sequences: dict[str, int] = {}
        types = tuple(EntityType) if entity_types is None else tuple(entity_types)
        self._stores = {t: InMemoryEntityStore(t, self._lock) for t in types}

    def create_draft(self, payload: Mapping[str, Any], correlation_id: str) -> GatewayResponse:
        draft_id = f"dr_{uuid.uuid4().hex}"
        stored = {**copy.deepcopy(dict(payload)), "draft_id": draft_id}
        with self._lock:
            self._drafts[draft_id] = stored
        return GatewayResponse(correlation_id=correlation_id, value=draft_id)

    def update_draft(
        self,
        draft_id: str,
        payload: Mapping[str, Any],
        expected_version: int,
        correlation_id: str,
    ) -> GatewayResponse:
        with self._lock:
            current = self._drafts.get(draft_id)
            if current is None:
                return GatewayResponse.fail(correlation_id, ErrorCode.DRAFT_MISSING, f"draft {draft_id} not found")
            if int(current.get("version", 0)) != expected_version:
                return GatewayResponse.fail(
                    correlation_id,
                    ErrorCode.STATE_CONFLICT,
                    f"draft {draft_id} changed concurrently (expected version {expected_version}, "
                    f"found {current.get('version')})",
                )
            self._drafts[draft_id] = {**copy.deepcopy(dict(payload)), "draft_id": draft_id}
            status = self._drafts[draft_id].get("status")
        return GatewayResponse(correlation_id=correlation_id, value=status)

    def get_draft_snapshot(self, draft_id: str, correlation_id: str) -> GatewayResponse:
        with self._lock:
            current = self._drafts.get(draft_id)
        return GatewayResponse(correlation_id=correlation_id, value=copy.deepcopy(current) if current else None)

    def seal_draft(
        self,
        draft_id: str,
        idempotency_key: Optional[str],
        record: Mapping[str, Any],
        sealed_draft: Mapping[str, Any],
        expected_version: int,
        correlation_id: str,
    ) -> GatewayResponse:
        tenant_id = str(record.get("tenant_id", ""))
        display_id = str(record.get("display_id", ""))
        with self._lock:
            current = self._drafts.get(draft_id)
            if current is None:
                return GatewayResponse.fail(correlation_id, ErrorCode.DRAFT_MISSING, f"draft {draft_id} not found")
            if (
                int(current.get("version", 0)) != expected_version
                or current.get("status") != DraftStatus.VALIDATED.value
            ):
                return GatewayResponse.fail(
                    correlation_id,
                    ErrorCode.STATE_CONFLICT,
                    f"draft {draft_id} is no longer sealable (status {current.get('status')})",
                )
            if idempotency_key:
                existing = self._references.get((tenant_id, idempotency_key))
                if existing is not None:
                    return GatewayResponse.fail(
                        correlation_id,
                        ErrorCode.IDEMPOTENCY_CONFLICT,
                        f"external reference {idempotency_key} already sealed as {existing}",
                    )
                self._references[(tenant_id, idempotency_key)] = display_id
            self._records[(tenant_id, display_id)] = copy.deepcopy(dict(record))
            self._drafts[draft_id] = {**copy.deepcopy(dict(sealed_draft)), "draft_id": draft_id}
        return GatewayResponse(correlation_id=correlation_id, value=copy.deepcopy(dict(record)))

    def next_display_sequence(self, tenant_id: str, correlation_id: str) -> GatewayResponse:
        with self._lock:
            n = self._sequences.get(tenant_id, 0) + 1
            self._sequences[tenant_id] = n
        return GatewayResponse(correlation_id=correlation_id, value=n)

    def get_record(self, tenant_id: str, display_id: str, correlation_id: str) -> GatewayResponse:
        with self._lock:
            rec = self._records.get((tenant_id, display_id))
        return GatewayResponse(correlation_id=correlation_id, value=copy.deepcopy(rec) if rec else None)

    def find_record_by_reference(
        self, tenant_id: str, external_reference_id: str, correlation_id: str
    ) -> GatewayResponse:
        with self._lock:
            display_id = self._references.get((tenant_id, external_reference_id))
            rec = self._records.get((tenant_id, display_id)) if display_id else None
        return GatewayResponse(correlation_id=correlation_id, value=copy.deepcopy(rec) if rec else None)

    def entity_store(self, entity_type: EntityType) -> Optional[InMemoryEntityStore]:
        return self._stores.get(entity_type)
