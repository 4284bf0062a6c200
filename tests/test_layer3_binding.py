from __future__ import annotations

import dataclasses
import unittest
from datetime import datetime, timezone

from adapter_gateway import GatewayResponse, InMemoryAdapterGateway, RetryPolicy
from binding_resolver import (
    BindingResolver,
    apply_binding,
    assert_usable,
    identity_conflicts,
    reconciliation_status,
    row_match_statuses,
    select_row_identifier,
)
from contracts.errors import (
    AdapterContractViolationError,
    ErrorCode,
    NotConfiguredError,
    ReconciliationRequiredError,
    StateConflictError,
    TransientGatewayError,
    ValidationFailedError,
)
from contracts.schemas import (
    BindingMode,
    EntityType,
    EvidenceDraft,
    EvidenceType,
    IngestionMethod,
    ProvenanceChannel,
    ReconciliationStatus,
    Scope,
)
from sealing import build_record


def _draft(**kw) -> EvidenceDraft:
    base = dict(
        draft_id="d1",
        tenant_id="t1",
        ingestion_method=IngestionMethod.MANUAL_ENTRY,
        evidence_type=EvidenceType.SUPPLIER_MASTER,
        declared_scope=Scope.SUPPLIER,
        purpose="Quarterly supplier master refresh",
        provenance_source=ProvenanceChannel.INTERNAL_USER,
        correlation_id="c1",
    )
    base.update(kw)
    return EvidenceDraft(**base)


class _FlakyStore:
    """Fails the first `failures` reads with a transient error."""

    def __init__(self, inner, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.reads = 0

    def create(self, stub, correlation_id):
        return self.inner.create(stub, correlation_id)

    def read(self, entity_id, correlation_id):
        self.reads += 1
        if self.reads <= self.failures:
            raise TransientGatewayError("store unavailable", correlation_id=correlation_id)
        return self.inner.read(entity_id, correlation_id)

    def search(self, query, correlation_id):
        return self.inner.search(query, correlation_id)


class _ForgetfulStore:
    def create(self, stub, correlation_id):
        return GatewayResponse(correlation_id=correlation_id, value={**stub, "id": "sup-x"})

    def read(self, entity_id, correlation_id):
        return GatewayResponse(correlation_id=correlation_id, value=None)

    def search(self, query, correlation_id):
        return GatewayResponse(correlation_id=correlation_id, value=[])


class _GatewayWith(InMemoryAdapterGateway):
    def __init__(self, store) -> None:
        super().__init__()
        self._store = store

    def entity_store(self, entity_type):
        return self._store


class _CountingGateway(InMemoryAdapterGateway):
    def __init__(self) -> None:
        super().__init__()
        self.lookups = 0

    def entity_store(self, entity_type):
        self.lookups += 1
        return super().entity_store(entity_type)


FAST = RetryPolicy(max_attempts=3, base_delay_seconds=0.0)


class TestBindingResolver(unittest.TestCase):
    def setUp(self) -> None:
        self.gw = InMemoryAdapterGateway()
        self.resolver = BindingResolver(self.gw, FAST, sleep=lambda _: None)

    def test_create_entity_confirms_and_snapshots(self) -> None:
        decision = self.resolver.create_entity(
            EntityType.SUPPLIER, {"supplier_name": "Acme", "country_code": "DE"}, correlation_id="c1"
        )
        self.assertEqual(decision.mode, BindingMode.CREATE_NEW)
        self.assertTrue(decision.bound)
        self.assertEqual(decision.snapshot.as_dict(), {"supplier_name": "Acme", "country_code": "DE"})
        found = self.resolver.search(EntityType.SUPPLIER, "acme", correlation_id="c2")
        self.assertEqual([r["id"] for r in found], [decision.entity_id])

    def test_create_entity_requires_identity_fields(self) -> None:
        with self.assertRaises(ValidationFailedError) as ctx:
            self.resolver.create_entity(EntityType.SUPPLIER, {"supplier_name": "Acme"}, correlation_id="c1")
        self.assertIn("country_code", ctx.exception.errors)

    def test_bind_existing_reads_identity_through_gateway(self) -> None:
        created = self.resolver.create_entity(
            EntityType.SKU, {"sku": "SKU-1", "product_name": "Widget"}, correlation_id="c1"
        )
        decision = self.resolver.bind_existing(EntityType.SKU, created.entity_id, correlation_id="c2")
        self.assertEqual(decision.mode, BindingMode.BIND_EXISTING)
        self.assertEqual(decision.snapshot.as_dict()["sku"], "SKU-1")

    def test_bind_existing_unknown_entity(self) -> None:
        with self.assertRaises(ValidationFailedError) as ctx:
            self.resolver.bind_existing(EntityType.SUPPLIER, "nope", correlation_id="c1")
        self.assertIn("bound_entity_id", ctx.exception.errors)

    def test_read_is_retried_on_transient_failure(self) -> None:
        store = _FlakyStore(self.gw.entity_store(EntityType.SUPPLIER), failures=2)
        resolver = BindingResolver(_GatewayWith(store), FAST, sleep=lambda _: None)
        created = store.inner.create({"supplier_name": "Acme", "country_code": "DE"}, "c0").value
        decision = resolver.bind_existing(EntityType.SUPPLIER, created["id"], correlation_id="c1")
        self.assertTrue(decision.bound)
        self.assertEqual(store.reads, 3)

    def test_retries_are_bounded(self) -> None:
        store = _FlakyStore(self.gw.entity_store(EntityType.SUPPLIER), failures=10)
        resolver = BindingResolver(_GatewayWith(store), FAST, sleep=lambda _: None)
        with self.assertRaises(TransientGatewayError):
            resolver.bind_existing(EntityType.SUPPLIER, "sup-1", correlation_id="c1")
        self.assertEqual(store.reads, 3)

    def test_missing_read_back_is_contract_violation(self) -> None:
        resolver = BindingResolver(_GatewayWith(_ForgetfulStore()), FAST, sleep=lambda _: None)
        with self.assertRaises(AdapterContractViolationError) as ctx:
            resolver.create_entity(
                EntityType.SUPPLIER, {"supplier_name": "Acme", "country_code": "DE"}, correlation_id="c1"
            )
        self.assertEqual(ctx.exception.code, ErrorCode.ADAPTER_CONTRACT_VIOLATION)

    def test_unconfigured_store(self) -> None:
        resolver = BindingResolver(InMemoryAdapterGateway(entity_types=()), FAST)
        with self.assertRaises(NotConfiguredError):
            resolver.bind_existing(EntityType.SUPPLIER, "sup-1", correlation_id="c1")

    def test_entity_stores_are_verified_once(self) -> None:
        gw = _CountingGateway()
        resolver = BindingResolver(gw, FAST, sleep=lambda _: None)
        after_init = gw.lookups
        self.assertEqual(after_init, len(EntityType))
        created = resolver.create_entity(
            EntityType.SUPPLIER, {"supplier_name": "Acme", "country_code": "DE"}, correlation_id="c1"
        )
        resolver.bind_existing(EntityType.SUPPLIER, created.entity_id, correlation_id="c2")
        resolver.search(EntityType.SUPPLIER, "acme", correlation_id="c3")
        self.assertEqual(gw.lookups, after_init)


class TestBindingRules(unittest.TestCase):
    def _bound(self) -> EvidenceDraft:
        resolver = BindingResolver(InMemoryAdapterGateway(), FAST)
        decision = resolver.bind_existing(
            EntityType.SUPPLIER, "sup-1", {"supplier_name": "Acme", "country_code": "DE"}, correlation_id="c1"
        )
        return apply_binding(_draft(), decision)

    def test_snapshot_is_write_once(self) -> None:
        draft = self._bound()
        resolver = BindingResolver(InMemoryAdapterGateway(), FAST)
        same = resolver.bind_existing(
            EntityType.SUPPLIER, "sup-1", {"supplier_name": "Acme", "country_code": "DE"}, correlation_id="c2"
        )
        self.assertIs(apply_binding(draft, same), draft)
        other = resolver.bind_existing(
            EntityType.SUPPLIER, "sup-2", {"supplier_name": "Other", "country_code": "FR"}, correlation_id="c3"
        )
        with self.assertRaises(StateConflictError):
            apply_binding(draft, other)

    def test_identity_edits_are_rejected(self) -> None:
        draft = self._bound()
        self.assertEqual(identity_conflicts(draft, {"supplier_name": "Acme", "vat_number": "X"}), {})
        errors = identity_conflicts(draft, {"supplier_name": "Acme GmbH", "country_code": "FR"})
        self.assertEqual(set(errors), {"supplier_name", "country_code"})

    def test_deferred_draft_has_no_identity_constraint(self) -> None:
        self.assertEqual(identity_conflicts(_draft(), {"supplier_name": "Anything"}), {})

    def test_row_match_statuses(self) -> None:
        payload = {
            "components": [
                {"component_sku_id": "sku-1", "quantity": 1, "uom": "kg"},
                {"component_sku_code": "ABC", "quantity": 1, "uom": "kg"},
            ]
        }
        self.assertEqual(
            row_match_statuses(payload), (ReconciliationStatus.BOUND, ReconciliationStatus.PENDING_MATCH)
        )
        self.assertEqual(row_match_statuses({}), ())

    def test_reconciliation_status(self) -> None:
        self.assertEqual(reconciliation_status(_draft()), ReconciliationStatus.UNBOUND)
        self.assertEqual(reconciliation_status(self._bound()), ReconciliationStatus.BOUND)
        pending = dataclasses.replace(
            self._bound(),
            payload={"components": [{"component_sku_code": "ABC", "quantity": 1, "uom": "kg"}]},
        )
        self.assertEqual(reconciliation_status(pending), ReconciliationStatus.PENDING_MATCH)

    def test_deferred_org_wide_draft_is_unbound(self) -> None:
        org_wide = _draft(
            ingestion_method=IngestionMethod.API_PUSH_DIGEST,
            evidence_type=EvidenceType.TRANSACTION_LOG,
            declared_scope=Scope.ENTIRE_ORG,
            binding_mode=BindingMode.DEFER,
        )
        self.assertEqual(reconciliation_status(org_wide), ReconciliationStatus.UNBOUND)
        record = build_record(org_wide, display_id="EV-000003", sealed_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(record.reconciliation_status, ReconciliationStatus.UNBOUND)
        self.assertFalse(record.usable_for_calculations)

    def test_select_row_identifier_clears_the_other(self) -> None:
        row = {"component_sku_code": "ABC", "quantity": 2, "uom": "kg"}
        picked = select_row_identifier(row, entity_id="sku-9")
        self.assertEqual(picked["component_sku_id"], "sku-9")
        self.assertNotIn("component_sku_code", picked)
        back = select_row_identifier(picked, code="XYZ")
        self.assertEqual(back["component_sku_code"], "XYZ")
        self.assertNotIn("component_sku_id", back)
        with self.assertRaises(ValueError):
            select_row_identifier(row, entity_id="a", code="b")

    def test_assert_usable(self) -> None:
        ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
        unbound = build_record(_draft(), display_id="EV-000001", sealed_at=ts)
        self.assertFalse(unbound.usable_for_calculations)
        with self.assertRaises(ReconciliationRequiredError):
            assert_usable(unbound)
        bound = build_record(self._bound(), display_id="EV-000002", sealed_at=ts)
        self.assertIs(assert_usable(bound), bound)


if __name__ == "__main__":
    unittest.main()
