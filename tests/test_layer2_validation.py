from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from contracts.errors import ValidationFailedError
from contracts.schemas import (
    AttachmentMeta,
    BindingMode,
    EntityType,
    EvidenceDraft,
    EvidenceType,
    IdentitySnapshot,
    IngestionMethod,
    IntakeRequest,
    ProvenanceChannel,
    RetentionPolicy,
    Scope,
)
from validation_engine import enforce_intake, validate_intake, validate_payload

PURPOSE = "Quarterly supplier master refresh for CBAM"
ATTEST = "Entered by procurement from signed supplier form"
SHA = "a" * 64


def _intake(**kw) -> IntakeRequest:
    base = dict(
        tenant_id="t1",
        ingestion_method=IngestionMethod.MANUAL_ENTRY,
        evidence_type=EvidenceType.SUPPLIER_MASTER,
        declared_scope=Scope.SUPPLIER,
        purpose=PURPOSE,
        provenance_source=ProvenanceChannel.INTERNAL_USER,
        binding_mode=BindingMode.DEFER,
    )
    base.update(kw)
    return IntakeRequest(**base)


def _draft(**kw) -> EvidenceDraft:
    base = dict(
        draft_id="d1",
        tenant_id="t1",
        ingestion_method=IngestionMethod.MANUAL_ENTRY,
        evidence_type=EvidenceType.SUPPLIER_MASTER,
        declared_scope=Scope.SUPPLIER,
        purpose=PURPOSE,
        provenance_source=ProvenanceChannel.INTERNAL_USER,
        correlation_id="c1",
        attestation_notes=ATTEST,
    )
    base.update(kw)
    return EvidenceDraft(**base)


def _bom(rows) -> EvidenceDraft:
    return _draft(evidence_type=EvidenceType.BOM, declared_scope=Scope.PRODUCT, payload={"components": rows})


class TestIntakeValidation(unittest.TestCase):
    def test_valid_deferred_intake(self) -> None:
        self.assertTrue(validate_intake(_intake()).valid)

    def test_supplier_master_on_product_scope_fails(self) -> None:
        res = validate_intake(_intake(declared_scope=Scope.PRODUCT))
        self.assertFalse(res.valid)
        self.assertIn("declared_scope", res.errors)
        self.assertIn("Allowed: SUPPLIER", res.errors["declared_scope"])

    def test_short_purpose_and_missing_fields(self) -> None:
        res = validate_intake(_intake(purpose="too short", provenance_source=None, tenant_id=""))
        self.assertEqual(set(res.errors), {"purpose", "provenance_source", "tenant_id"})

    def test_method_type_incompatibility(self) -> None:
        res = validate_intake(_intake(evidence_type=EvidenceType.CERTIFICATE))
        self.assertIn("evidence_type", res.errors)

    def test_external_reference_required_for_erp(self) -> None:
        res = validate_intake(_intake(ingestion_method=IngestionMethod.ERP_API_PULL))
        self.assertIn("external_reference_id", res.errors)
        ok = validate_intake(_intake(ingestion_method=IngestionMethod.ERP_API_PULL, external_reference_id="X1-REF"))
        self.assertTrue(ok.valid, ok.errors)

    def test_binding_rules(self) -> None:
        res = validate_intake(_intake(binding_mode=None))
        self.assertIn("binding_mode", res.errors)
        res = validate_intake(_intake(binding_mode=BindingMode.BIND_EXISTING))
        self.assertEqual(res.errors["bound_entity_id"], "Please select an entity")
        res = validate_intake(_intake(binding_mode=BindingMode.CREATE_NEW))
        self.assertEqual(res.errors["bound_entity_id"], "Please create an entity first")
        res = validate_intake(_intake(binding_mode=BindingMode.DEFER, bound_entity_id="sup-1"))
        self.assertIn("bound_entity_id", res.errors)

    def test_entire_org_allows_only_defer(self) -> None:
        req = _intake(
            ingestion_method=IngestionMethod.API_PUSH_DIGEST,
            evidence_type=EvidenceType.TRANSACTION_LOG,
            declared_scope=Scope.ENTIRE_ORG,
            external_reference_id="TX-1",
            binding_mode=BindingMode.BIND_EXISTING,
            bound_entity_id="le-1",
        )
        self.assertIn("binding_mode", validate_intake(req).errors)

    def test_custom_retention_needs_days(self) -> None:
        res = validate_intake(_intake(retention_policy=RetentionPolicy.CUSTOM))
        self.assertIn("retention_custom_days", res.errors)
        self.assertTrue(validate_intake(_intake(retention_policy=RetentionPolicy.CUSTOM, retention_custom_days=30)).valid)

    def test_enforce_raises_with_all_errors(self) -> None:
        with self.assertRaises(ValidationFailedError) as ctx:
            enforce_intake(_intake(declared_scope=Scope.PRODUCT, purpose=""), correlation_id="c9")
        self.assertEqual(ctx.exception.correlation_id, "c9")
        self.assertIn("declared_scope", ctx.exception.errors)
        self.assertIn("purpose", ctx.exception.errors)

    def test_resolution_deadline_window(self) -> None:
        now = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
        latest = (now + timedelta(days=90)).isoformat()
        self.assertTrue(validate_intake(_intake(resolution_deadline_utc=latest), now).valid)
        self.assertTrue(validate_intake(_intake(resolution_deadline_utc="2026-03-02T00:00:00Z"), now).valid)

        for bad in (
            now.isoformat(),
            "2026-02-28T23:59:59Z",
            (now + timedelta(days=90, seconds=1)).isoformat(),
            "next tuesday",
        ):
            res = validate_intake(_intake(resolution_deadline_utc=bad), now)
            self.assertIn("resolution_deadline_utc", res.errors, bad)

    def test_resolution_deadline_needs_deferred_target(self) -> None:
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        bound = _intake(
            binding_mode=BindingMode.BIND_EXISTING, bound_entity_id="sup-1", resolution_deadline_utc="2026-03-10T00:00:00Z"
        )
        self.assertIn("resolution_deadline_utc", validate_intake(bound, now).errors)
        org_wide = _intake(
            ingestion_method=IngestionMethod.API_PUSH_DIGEST,
            evidence_type=EvidenceType.TRANSACTION_LOG,
            declared_scope=Scope.ENTIRE_ORG,
            external_reference_id="TX-1",
            resolution_deadline_utc="2026-03-10T00:00:00Z",
        )
        self.assertIn("resolution_deadline_utc", validate_intake(org_wide, now).errors)


class TestPayloadValidation(unittest.TestCase):
    def test_unbound_supplier_without_country_fails(self) -> None:
        res = validate_payload(_draft(payload={"supplier_name": "Acme"}))
        self.assertFalse(res.valid)
        self.assertIn("country_code", res.errors)

    def test_bound_snapshot_fills_identity_fields(self) -> None:
        snap = IdentitySnapshot.capture(
            EntityType.SUPPLIER, "sup-1", {"supplier_name": "Acme", "country_code": "DE"}, ("supplier_name", "country_code")
        )
        draft = _draft(
            binding_mode=BindingMode.BIND_EXISTING,
            bound_entity_id="sup-1",
            binding_identity_snapshot=snap,
            payload={"vat_number": "DE123"},
        )
        res = validate_payload(draft)
        self.assertTrue(res.valid, res.errors)

    def test_unknown_field_rejected(self) -> None:
        res = validate_payload(_draft(payload={"supplier_name": "Acme", "country_code": "DE", "colour": "red"}))
        self.assertIn("colour", res.errors)

    def test_attestation_required_for_manual_entry(self) -> None:
        res = validate_payload(_draft(payload={"supplier_name": "Acme", "country_code": "DE"}, attestation_notes="ok"))
        self.assertIn("attestation_notes", res.errors)

    def test_bom_with_zero_rows_fails(self) -> None:
        res = validate_payload(_bom([]))
        self.assertEqual(res.errors["components"], "At least 1 row(s) required")

    def test_bom_row_with_both_identifiers_fails(self) -> None:
        res = validate_payload(
            _bom([{"component_sku_id": "sku-1", "component_sku_code": "ABC", "quantity": 1, "uom": "kg"}])
        )
        self.assertIn("components[0]", res.errors)
        self.assertIn("not both", res.errors["components[0]"])

    def test_bom_quantity_zero_fails(self) -> None:
        for qty in (0, -1, 0.0, True, "3", float("nan")):
            res = validate_payload(_bom([{"component_sku_id": "sku-1", "quantity": qty, "uom": "kg"}]))
            self.assertIn("components[0]", res.errors, qty)
            self.assertIn("quantity must be > 0", res.errors["components[0]"])

    def test_all_failing_rows_reported(self) -> None:
        rows = [
            {"component_sku_id": "sku-1", "quantity": 0, "uom": "kg"},
            {"component_sku_code": "ABC", "quantity": 2, "uom": "pcs"},
            {"quantity": 1, "uom": "kg"},
            {"component_sku_id": "sku-4", "quantity": 1, "uom": "tons"},
        ]
        res = validate_payload(_bom(rows))
        self.assertEqual(res.failing_rows(), (0, 2, 3))
        self.assertEqual(res.errors["components"], "3 of 4 row(s) invalid")

    def test_valid_bom(self) -> None:
        rows = [
            {"component_sku_id": "sku-1", "quantity": 2.5, "uom": "kg"},
            {"component_sku_code": "ABC", "quantity": 4, "uom": "pcs"},
        ]
        res = validate_payload(_bom(rows))
        self.assertTrue(res.valid, res.errors)

    def test_digest_receipt_checked(self) -> None:
        draft = _draft(
            ingestion_method=IngestionMethod.API_PUSH_DIGEST,
            external_reference_id="PUSH-1",
            receipt={"payload_digest_sha256": "XYZ", "received_at_utc": "2026-01-01T00:00:00Z"},
            attestation_notes=None,
        )
        res = validate_payload(draft)
        self.assertEqual(res.errors["payload_digest_sha256"], "Must be 64 lowercase hex characters")

    def test_file_upload_needs_attachment(self) -> None:
        draft = _draft(ingestion_method=IngestionMethod.FILE_UPLOAD, attestation_notes=None)
        self.assertIn("attachments", validate_payload(draft).errors)
        good = _draft(
            ingestion_method=IngestionMethod.FILE_UPLOAD,
            attestation_notes=None,
            attachments=(AttachmentMeta(file_name="suppliers.csv", size_bytes=10, sha256=SHA),),
        )
        self.assertTrue(validate_payload(good).valid, validate_payload(good).errors)

    def test_file_upload_payload_is_checked_against_schema(self) -> None:
        attached = (AttachmentMeta(file_name="suppliers.csv", size_bytes=10, sha256=SHA),)
        draft = _draft(
            ingestion_method=IngestionMethod.FILE_UPLOAD,
            attestation_notes=None,
            attachments=attached,
            payload={"supplier_name": "Acme"},
        )
        res = validate_payload(draft)
        self.assertEqual(set(res.errors), {"country_code"})

    def test_file_upload_bom_rows_are_checked(self) -> None:
        attached = (AttachmentMeta(file_name="bom.csv", size_bytes=10, sha256=SHA),)
        empty = _draft(
            ingestion_method=IngestionMethod.FILE_UPLOAD,
            evidence_type=EvidenceType.BOM,
            declared_scope=Scope.PRODUCT,
            attestation_notes=None,
            attachments=attached,
            payload={"components": []},
        )
        self.assertEqual(validate_payload(empty).errors["components"], "At least 1 row(s) required")

        bad_row = {"component_sku_id": "sku-1", "component_sku_code": "ABC", "quantity": 0, "uom": "xx"}
        res = validate_payload(
            _draft(
                ingestion_method=IngestionMethod.FILE_UPLOAD,
                evidence_type=EvidenceType.BOM,
                declared_scope=Scope.PRODUCT,
                attestation_notes=None,
                attachments=attached,
                payload={"components": [bad_row]},
            )
        )
        issues = res.errors["components[0]"]
        self.assertIn("not both", issues)
        self.assertIn("quantity must be > 0", issues)
        self.assertIn("uom must be one of", issues)

    def test_digest_bom_rows_are_checked(self) -> None:
        receipt = {"payload_digest_sha256": SHA, "received_at_utc": "2026-01-01T00:00:00Z"}
        base = dict(
            ingestion_method=IngestionMethod.API_PUSH_DIGEST,
            evidence_type=EvidenceType.BOM,
            declared_scope=Scope.PRODUCT,
            external_reference_id="PUSH-1",
            attestation_notes=None,
            receipt=receipt,
        )
        res = validate_payload(_draft(payload={"components": []}, **base))
        self.assertEqual(res.errors["components"], "At least 1 row(s) required")

        bad_row = {"component_sku_id": "sku-1", "component_sku_code": "ABC", "quantity": 0, "uom": "xx"}
        res = validate_payload(_draft(payload={"components": [bad_row]}, **base))
        self.assertIn("not both", res.errors["components[0]"])
        self.assertIn("uom must be one of", res.errors["components[0]"])

        good_row = {"component_sku_code": "ABC", "quantity": 1, "uom": "kg"}
        good = validate_payload(_draft(payload={"components": [good_row]}, **base))
        self.assertTrue(good.valid, good.errors)

    def test_attachment_only_upload_skips_schema(self) -> None:
        draft = _draft(
            ingestion_method=IngestionMethod.FILE_UPLOAD,
            evidence_type=EvidenceType.BOM,
            declared_scope=Scope.PRODUCT,
            attestation_notes=None,
            attachments=(AttachmentMeta(file_name="bom.pdf", size_bytes=10, sha256=SHA),),
        )
        self.assertTrue(validate_payload(draft).valid, validate_payload(draft).errors)

    def test_non_finite_payload_value_is_rejected(self) -> None:
        base = {"supplier_name": "Acme", "country_code": "DE"}
        res = validate_payload(_draft(payload={**base, "address": float("nan")}))
        self.assertFalse(res.valid)
        self.assertEqual(res.errors["address"], "address must be a finite number")

        res = validate_payload(_draft(payload={**base, "address": {"lines": [float("inf")]}}))
        self.assertIn("address", res.errors)
        res = validate_payload(_draft(payload={**base, "address": object()}))
        self.assertIn("unsupported value type", res.errors["address"])


if __name__ == "__main__":
    unittest.main()
