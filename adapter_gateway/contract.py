from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

from contracts.errors import (
    AdapterContractViolationError,
    DraftMissingError,
    ErrorCode,
    IdempotencyConflictError,
    IntakeError,
    NotConfiguredError,
    StateConflictError,
    TransientGatewayError,
)
from contracts.schemas import EntityType


@dataclass(frozen=True)
class GatewayError:
    code: ErrorCode
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message}


@dataclass(frozen=True)
class GatewayResponse:
    correlation_id: str
    value: Any = None
    error: Optional[GatewayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def fail(cls, correlation_id: str, code: ErrorCode, message: str) -> "GatewayResponse":
        return cls(correlation_id=correlation_id, error=GatewayError(code=code, message=message))


@runtime_checkable
class EntityStore(Protocol):
    def create(self, stub: Mapping[str, Any], correlation_id: str) -> GatewayResponse: ...

    def read(self, entity_id: str, correlation_id: str) -> GatewayResponse: ...

    def search(self, query: str, correlation_id: str) -> GatewayResponse: ...


@runtime_checkable
class AdapterGateway(Protocol):
    def create_draft(self, payload: Mapping[str, Any], correlation_id: str) -> GatewayResponse: ...

    def update_draft(
        self,
        draft_id: str,
        payload: Mapping[str, Any],
        expected_version: int,
        correlation_id: str,
    ) -> GatewayResponse: ...

    def get_draft_snapshot(self, draft_id: str, correlation_id: str) -> GatewayResponse: ...

    def seal_draft(
        self,
        draft_id: str,
        idempotency_key: Optional[str],
        record: Mapping[str, Any],
        sealed_draft: Mapping[str, Any],
        expected_version: int,
        correlation_id: str,
    ) -> GatewayResponse: ...

    def next_display_sequence(self, tenant_id: str, correlation_id: str) -> GatewayResponse: ...

    def get_record(self, tenant_id: str, display_id: str, correlation_id: str) -> GatewayResponse: ...

    def find_record_by_reference(
        self, tenant_id: str, external_reference_id: str, correlation_id: str
    ) -> GatewayResponse: ...

    def entity_store(self, entity_type: EntityType) -> EntityStore: ...


REQUIRED_GATEWAY_METHODS: Tuple[str, ...] = (
    "create_draft",
    "update_draft",
    "get_draft_snapshot",
    "seal_draft",
    "next_display_sequence",
    "get_record",
    "find_record_by_reference",
    "entity_store",
)
REQUIRED_ENTITY_METHODS: Tuple[str, ...] = ("create", "read", "search")


def _missing(obj: Any, names: Sequence[str]) -> Tuple[str, ...]:
    return tuple(n for n in names if not callable(getattr(obj, n, None)))


def verify_gateway(gateway: Any) -> AdapterGateway:
    if gateway is None:
        raise NotConfiguredError("no adapter gateway configured")
    missing = _missing(gateway, REQUIRED_GATEWAY_METHODS)
    if missing:
        raise AdapterContractViolationError(
            "adapter gateway missing required methods: " + ",".join(missing),
            details={"missing": list(missing)},
        )
    return gateway


def verify_entity_store(store: Any, entity_type: EntityType) -> EntityStore:
    if store is None:
        raise NotConfiguredError(f"no entity store configured for {entity_type.value}")
    missing = _missing(store, REQUIRED_ENTITY_METHODS)
    if missing:
        raise AdapterContractViolationError(
            f"{entity_type.value} entity store missing required methods: " + ",".join(missing),
            details={"missing": list(missing), "entity_type": entity_type.value},
        )
    return store


_ERROR_TYPES: Mapping[ErrorCode, type[IntakeError]] = {
    ErrorCode.DRAFT_MISSING: DraftMissingError,
    ErrorCode.STATE_CONFLICT: StateConflictError,
    ErrorCode.IDEMPOTENCY_CONFLICT: IdempotencyConflictError,
    ErrorCode.NOT_CONFIGURED: NotConfiguredError,
    ErrorCode.ADAPTER_UNAVAILABLE: TransientGatewayError,
}


def unwrap(response: Any, correlation_id: str) -> Any:
    """Return the response value, raising the structured error it carries."""
    if not isinstance(response, GatewayResponse):
        raise AdapterContractViolationError(
            f"gateway returned {type(response).__name__}, expected GatewayResponse",
            correlation_id=correlation_id,
        )
    if response.correlation_id != correlation_id:
        raise AdapterContractViolationError(
            "gateway response did not echo the correlation id",
            correlation_id=correlation_id,
            details={"echoed": response.correlation_id},
        )
    if response.error is not None:
        exc_type = _ERROR_TYPES.get(response.error.code, AdapterContractViolationError)
        raise exc_type(
            response.error.message,
            correlation_id=correlation_id,
            details={"gateway_code": response.error.code.value},
        )
    return response.value
