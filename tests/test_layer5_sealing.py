from __future__ import annotations

import dataclasses
import threading
import unittest
from datetime import datetime, timezone

from adapter_gateway import InMemoryAdapterGateway, SqliteAdapterGateway
from binding_resolver import BindingDecision
from contracts.errors import ErrorCode, IdempotencyConflictError, NotConfiguredError, StateConflictError
from contracts.schemas import (
    BindingMode,
    DraftStatus,
    EvidenceDraft,
    EvidenceType,
    IngestionMethod,
    IntakeRequest,
    PayloadSubmission,
    ProvenanceChannel,
    RetentionPolicy,
    Scope,
    TrustLevel,
)
from draft_lifecycle import attach_payload, open_draft
from sealing import (
    HASH_SCOPE,
    SealingService,
    canonical_json,
    compute_metadata_hash,
    compute_payload_hash,
    format_display_id,
    retention_ends_at,
)

SEALED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _validated(gateway, external_reference_id: str = "X1", payload=None) -> EvidenceDraft:
    req = IntakeRequest(
        tenant_id="t1",
        ingestion_method=IngestionMethod.ERP_API_PULL,
        evidence_type=EvidenceType.SUPPLIER_MASTER,
        declared_scope=Scope.SUPPLIER,
        purpose="Nightly ERP supplier sync for reporting",
        provenance_source=ProvenanceChannel.SYSTEM_GENERATED,
        binding_mode=BindingMode.DEFER,
        external_reference_id=external_reference_id,
    )
    draft = open_draft(req, correlation_id="c1", binding=BindingDecision(BindingMode.DEFER))
    draft_id = gateway.create_draft(draft.to_dict(), "c1").value
    draft = dataclasses.replace(draft, draft_id=draft_id)
    submission = PayloadSubmission(
        payload=payload or {"supplier_name": "Acme", "country_code": "DE"},
        receipt={"connector_id": "sap-1", "sync_run_id": "run-7"},
    )
    outcome = attach_payload(draft, submission)
    assert outcome.draft.status == DraftStatus.VALIDATED, outcome.validation.errors
    gateway.update_draft(draft_id, outcome.draft.to_dict(), draft.version, "c1")
    return outcome.draft


class TestCanonicalHashing(unittest.TestCase):
    def test_canonical_json_is_order_independent(self) -> None:
        a = {"b": 1, "a": {"y": [1, 2], "x": "é"}}
        b = {"a": {"x": "é", "y": [1, 2]}, "b": 1}
        self.assertEqual(canonical_json(a), canonical_json(b))
        self.assertEqual(canonical_json(a), '{"a":{"x":"é","y":[1,2]},"b":1}')

    def test_payload_hash_deterministic_under_key_reordering(self) -> None:
        gw = InMemoryAdapterGateway()
        d1 = _validated(gw, "X1", {"supplier_name": "Acme", "country_code": "DE"})
        d2 = dataclasses.replace(d1, payload={"country_code": "DE", "supplier_name": "Acme"})
        self.assertEqual(compute_payload_hash(d1), compute_payload_hash(d2))
        self.assertEqual(len(compute_payload_hash(d1)), 64)

    def test_payload_hash_covers_envelope(self) -> None:
        gw = InMemoryAdapterGateway()
        d1 = _validated(gw)
        self.assertNotEqual(compute_payload_hash(d1), compute_payload_hash(dataclasses.replace(d1, tenant_id="t2")))

    def test_metadata_hash_ignores_payload_but_covers_receipt(self) -> None:
        gw = InMemoryAdapterGateway()
        d1 = _validated(gw)
        self.assertEqual(
            compute_metadata_hash(d1), compute_metadata_hash(dataclasses.replace(d1, payload={"x": 1}))
        )
        self.assertNotEqual(
            compute_metadata_hash(d1),
            compute_metadata_hash(dataclasses.replace(d1, receipt={"connector_id": "other"})),
        )


class TestSealingService(unittest.TestCase):
    def _service(self, gw) -> SealingService:
        return SealingService(gw, clock=lambda: SEALED_AT)

    def test_seal_then_second_seal_is_idempotency_conflict(self) -> None:
        for gw in (InMemoryAdapterGateway(), SqliteAdapterGateway(":memory:")):
            with self.subTest(gateway=type(gw).__name__):
                svc = self._service(gw)
                draft = _validated(gw, "X1")
                result = svc.seal(draft, correlation_id="c2")
                rec = result.record
                self.assertEqual(rec.display_id, "EV-000001")
                self.assertEqual(len(rec.payload_hash), 64)
                self.assertEqual(rec.trust_level, TrustLevel.HIGH)
                self.assertEqual(rec.hash_scope, HASH_SCOPE)
                self.assertEqual(rec.sealed_at_utc, SEALED_AT.isoformat())
                self.assertEqual(result.draft.status, DraftStatus.SEALED)

                with self.assertRaises(IdempotencyConflictError) as ctx:
                    svc.seal(result.draft, correlation_id="c3")
                self.assertEqual(ctx.exception.code, ErrorCode.IDEMPOTENCY_CONFLICT)
                self.assertEqual(ctx.exception.details["existing_display_id"], "EV-000001")

                stored = gw.get_record("t1", "EV-000001", "c4").value
                self.assertEqual(stored["payload_hash"], rec.payload_hash)

    def test_duplicate_reference_on_another_draft_leaves_it_validated(self) -> None:
        for gw in (InMemoryAdapterGateway(), SqliteAdapterGateway(":memory:")):
            with self.subTest(gateway=type(gw).__name__):
                svc = self._service(gw)
                svc.seal(_validated(gw, "X1"), correlation_id="c1")
                second = _validated(gw, "X1")
                with self.assertRaises(IdempotencyConflictError):
                    svc.seal(second, correlation_id="c2")
                stored = gw.get_draft_snapshot(second.draft_id, "c3").value
                self.assertEqual(stored["status"], DraftStatus.VALIDATED.value)
                self.assertEqual(stored["version"], second.version)

    def test_stale_version_is_state_conflict(self) -> None:
        gw = InMemoryAdapterGateway()
        svc = self._service(gw)
        draft = _validated(gw, "X2")
        stale = dataclasses.replace(draft, version=draft.version - 1)
        with self.assertRaises(StateConflictError):
            svc.seal(stale, correlation_id="c1")

    def test_concurrent_seals_produce_one_record(self) -> None:
        gw = InMemoryAdapterGateway()
        svc = self._service(gw)
        draft = _validated(gw, "X3")
        outcomes: list[str] = []

        def worker() -> None:
            try:
                svc.seal(draft, correlation_id="c")
                outcomes.append("sealed")
            except (StateConflictError, IdempotencyConflictError) as exc:
                outcomes.append(exc.code.value)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(outcomes.count("sealed"), 1)
        self.assertEqual(set(outcomes) - {"sealed"}, {ErrorCode.STATE_CONFLICT.value})

    def test_racing_drafts_with_one_reference_seal_once(self) -> None:
        for gw in (InMemoryAdapterGateway(), SqliteAdapterGateway(":memory:")):
            with self.subTest(gateway=type(gw).__name__):
                svc = self._service(gw)
                drafts = [_validated(gw, "X5"), _validated(gw, "X5")]
                start = threading.Barrier(len(drafts))
                outcomes: dict[str, str] = {}

                def worker(draft: EvidenceDraft) -> None:
                    start.wait()
                    try:
                        outcomes[draft.draft_id] = svc.seal(draft, correlation_id="c").record.display_id
                    except (StateConflictError, IdempotencyConflictError) as exc:
                        outcomes[draft.draft_id] = exc.code.value

                threads = [threading.Thread(target=worker, args=(d,)) for d in drafts]
                for t in threads:
                    t.start()
                for t in threads:
                    t.join()

                self.assertEqual(len(outcomes), 2)
                sealed = [v for v in outcomes.values() if v.startswith("EV-")]
                self.assertEqual(len(sealed), 1, outcomes)
                self.assertIn(ErrorCode.IDEMPOTENCY_CONFLICT.value, outcomes.values())
                self.assertEqual(gw.find_record_by_reference("t1", "X5", "c").value["display_id"], sealed[0])

    def test_non_validated_draft_is_state_conflict(self) -> None:
        gw = InMemoryAdapterGateway()
        draft = dataclasses.replace(_validated(gw, "X4"), status=DraftStatus.QUARANTINED)
        with self.assertRaises(StateConflictError):
            self._service(gw).seal(draft, correlation_id="c1")

    def test_missing_gateway_is_not_configured(self) -> None:
        with self.assertRaises(NotConfiguredError):
            SealingService(None)


class TestRetention(unittest.TestCase):
    def test_retention_policies(self) -> None:
        ts = datetime(2024, 2, 29, tzinfo=timezone.utc)
        self.assertEqual(retention_ends_at(ts, RetentionPolicy.STANDARD_1_YEAR), datetime(2025, 2, 28, tzinfo=timezone.utc))
        self.assertEqual(retention_ends_at(ts, RetentionPolicy.SEVEN_YEARS).year, 2031)
        self.assertEqual(retention_ends_at(ts, RetentionPolicy.CUSTOM, 10), datetime(2024, 3, 10, tzinfo=timezone.utc))

    def test_display_id_format(self) -> None:
        self.assertEqual(format_display_id(42), "EV-000042")


if __name__ == "__main__":
    unittest.main()
