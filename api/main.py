from __future__ import annotations

import uuid
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from compatibility_registry import allowed_scopes_for, field_schema_for, is_scope_compatible, method_profile_for
from contracts.errors import ErrorCode, IntakeError
from contracts.schemas import EvidenceType, Scope, coerce_enum
from orchestrator import EvidenceIntakeService, IntakeSettings
from orchestrator.cli import registry_snapshot

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.UNKNOWN_IDENTIFIER: 422,
    ErrorCode.QUARANTINED: 422,
    ErrorCode.DRAFT_MISSING: 404,
    ErrorCode.STATE_CONFLICT: 409,
    ErrorCode.IDEMPOTENCY_CONFLICT: 409,
    ErrorCode.RECONCILIATION_REQUIRED: 409,
    ErrorCode.ADAPTER_CONTRACT_VIOLATION: 503,
    ErrorCode.NOT_CONFIGURED: 503,
    ErrorCode.ADAPTER_UNAVAILABLE: 503,
}


class IntakeBody(BaseModel):
    tenant_id: Optional[str] = None
    ingestion_method: Optional[str] = None
    evidence_type: Optional[str] = None
    declared_scope: Optional[str] = None
    purpose: str = ""
    provenance_source: Optional[str] = None
    binding_mode: Optional[str] = None
    bound_entity_id: Optional[str] = None
    binding_identity: dict[str, Any] = Field(default_factory=dict)
    reconciliation_hint: Optional[str] = None
    resolution_deadline_utc: Optional[str] = None
    external_reference_id: Optional[str] = None
    retention_policy: Optional[str] = "7_YEARS"
    retention_custom_days: Optional[int] = None


class AttachmentBody(BaseModel):
    file_name: str = ""
    size_bytes: int = 0
    sha256: str = ""


class PayloadBody(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    attestation_notes: Optional[str] = None
    receipt: dict[str, Any] = Field(default_factory=dict)
    attachments: list[AttachmentBody] = Field(default_factory=list)


class AbandonBody(BaseModel):
    reason: str = ""


def _settings(request: Request) -> IntakeSettings:
    # Without pinned settings the environment is read per request.
    return request.app.state.settings or IntakeSettings.from_env()


def _require_api_key(request: Request, x_api_key: Optional[str] = Header(default=None)) -> None:
    required = _settings(request).api_key
    if not required:
        # no key set => auth disabled (dev-friendly)
        return
    if not x_api_key or x_api_key != required:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _cid(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def create_app(
    service: Optional[EvidenceIntakeService] = None,
    settings: Optional[IntakeSettings] = None,
) -> FastAPI:
    app = FastAPI(title="Evidence Intake Core API", version="0.1.0")
    app.state.settings = settings
    app.state.service = service or EvidenceIntakeService.from_settings(settings or IntakeSettings.from_env())

    def svc() -> EvidenceIntakeService:
        return app.state.service

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = rid
        response = await call_next(request)
        response.headers["x-request-id"] = rid
        return response

    @app.exception_handler(IntakeError)
    async def intake_error_handler(request: Request, exc: IntakeError) -> JSONResponse:
        body = exc.to_dict()
        if not body.get("correlation_id"):
            body["correlation_id"] = _cid(request)
        return JSONResponse(status_code=STATUS_BY_CODE.get(exc.code, 500), content={"error": body})

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/registry", dependencies=[Depends(_require_api_key)])
    def registry() -> dict[str, Any]:
        return registry_snapshot()

    @app.get("/v1/registry/evidence-types/{evidence_type}/scopes", dependencies=[Depends(_require_api_key)])
    def scopes(evidence_type: str, scope: Optional[str] = None) -> dict[str, Any]:
        et = coerce_enum(EvidenceType, evidence_type, "evidence_type")
        out: dict[str, Any] = {
            "evidence_type": et.value,
            "allowed_scopes": sorted(s.value for s in allowed_scopes_for(et)),
        }
        if scope is not None:
            out["compatible"] = is_scope_compatible(et, coerce_enum(Scope, scope, "declared_scope"))
        schema = field_schema_for(et)
        out["required_fields"] = sorted(schema.required) if schema else []
        return out

    @app.get("/v1/registry/methods/{method}", dependencies=[Depends(_require_api_key)])
    def method_profile(method: str) -> dict[str, Any]:
        p = method_profile_for(method)
        return {
            "method": p.method.value,
            "allowed_evidence_types": sorted(t.value for t in p.allowed_evidence_types),
            "requires_external_reference_id": p.requires_external_reference_id,
            "payload_mode": p.payload_mode.value,
            "trust_level": p.trust_level.value,
            "required_receipt_fields": list(p.required_receipt_fields),
            "min_attachments": p.min_attachments,
        }

    @app.get("/v1/entities/{entity_type}", dependencies=[Depends(_require_api_key)])
    def search_entities(request: Request, entity_type: str, q: str = "") -> dict[str, Any]:
        return {"items": svc().search_entities(entity_type, q, correlation_id=_cid(request))}

    @app.post("/v1/entities/{entity_type}", status_code=201, dependencies=[Depends(_require_api_key)])
    def create_entity(request: Request, entity_type: str, stub: dict[str, Any]) -> dict[str, Any]:
        decision = svc().create_entity(entity_type, stub, correlation_id=_cid(request))
        return {
            "entity_type": decision.entity_type.value,
            "entity_id": decision.entity_id,
            "identity": decision.snapshot.as_dict() if decision.snapshot else {},
        }

    @app.post("/v1/drafts", status_code=201, dependencies=[Depends(_require_api_key)])
    def open_draft(request: Request, body: IntakeBody) -> dict[str, Any]:
        draft = svc().open_draft(body.model_dump(), correlation_id=_cid(request))
        return {"request_id": _cid(request), "draft": draft.to_dict()}

    @app.get("/v1/drafts/{draft_id}", dependencies=[Depends(_require_api_key)])
    def get_draft(request: Request, draft_id: str) -> dict[str, Any]:
        return {"draft": svc().get_draft(draft_id, correlation_id=_cid(request)).to_dict()}

    @app.put("/v1/drafts/{draft_id}/payload", dependencies=[Depends(_require_api_key)])
    def attach_payload(request: Request, draft_id: str, body: PayloadBody) -> dict[str, Any]:
        outcome = svc().attach_payload(draft_id, body.model_dump(), correlation_id=_cid(request))
        return {
            "request_id": _cid(request),
            "status": outcome.draft.status.value,
            "errors": dict(outcome.validation.errors),
            "draft": outcome.draft.to_dict(),
        }

    @app.post("/v1/drafts/{draft_id}/seal", status_code=201, dependencies=[Depends(_require_api_key)])
    def seal(request: Request, draft_id: str) -> dict[str, Any]:
        result = svc().seal(draft_id, correlation_id=_cid(request))
        return {"request_id": _cid(request), "record": result.record.to_dict()}

    @app.post("/v1/drafts/{draft_id}/abandon", dependencies=[Depends(_require_api_key)])
    def abandon(request: Request, draft_id: str, body: Optional[AbandonBody] = None) -> dict[str, Any]:
        reason = body.reason if body is not None else ""
        draft = svc().abandon(draft_id, reason=reason, correlation_id=_cid(request))
        return {"request_id": _cid(request), "draft": draft.to_dict()}

    @app.get("/v1/records/{display_id}", dependencies=[Depends(_require_api_key)])
    def get_record(request: Request, display_id: str, tenant_id: Optional[str] = None) -> dict[str, Any]:
        record = svc().get_record(display_id, tenant_id=tenant_id, correlation_id=_cid(request))
        if record is None:
            raise HTTPException(status_code=404, detail=f"record {display_id} not found")
        return {"record": record.to_dict()}

    return app


app = create_app()
