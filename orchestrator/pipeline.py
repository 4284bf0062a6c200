from __future__ import annotations

import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from adapter_gateway import (
    AdapterGateway,
    InMemoryAdapterGateway,
    RetryPolicy,
    SqliteAdapterGateway,
    call_with_retry,
    unwrap,
    verify_gateway,
)
from audit_log import AuditPolicy, build_audit_event, write_audit_event
from binding_resolver import BindingDecision, BindingResolver, assert_usable
from contracts.errors import AdapterContractViolationError, DraftMissingError, IntakeError
from contracts.schemas import (
    DraftStatus,
    EntityType,
    EvidenceDraft,
    EvidenceRecord,
    IntakeRequest,
    PayloadSubmission,
    coerce_enum,
)
from draft_lifecycle import LifecycleOutcome, abandon, attach_payload, open_draft
from orchestrator.settings import IntakeSettings
from sealing import SealingService, SealResult
from validation_engine import ValidationResult, enforce_intake

logger = logging.getLogger(__name__)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class IntakePolicy:
    tenant_id: str = ""
    audit: AuditPolicy = AuditPolicy()
    audit_log_path: Optional[str] = None
    retry: RetryPolicy = RetryPolicy()

    @classmethod
    def from_settings(cls, settings: IntakeSettings) -> "IntakePolicy":
        return cls(
            tenant_id=settings.tenant_id,
            audit=AuditPolicy(
                include_payload=settings.include_payload,
                redact_payload_keys=settings.redact_payload_keys,
            ),
            audit_log_path=settings.audit_log_path,
            retry=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay_seconds=settings.retry_base_delay,
            ),
        )


@dataclass(frozen=True)
class SubmissionResult:
    draft: EvidenceDraft
    validation: Optional[ValidationResult] = None
    record: Optional[EvidenceRecord] = None

    @property
    def sealed(self) -> bool:
        return self.record is not None

    @property
    def quarantined(self) -> bool:
        return self.draft.status == DraftStatus.QUARANTINED


def build_gateway(settings: IntakeSettings) -> AdapterGateway:
    if settings.db_path:
        return SqliteAdapterGateway(settings.db_path)
    return InMemoryAdapterGateway()


class EvidenceIntakeService:
    """
    Runs a draft through intake, binding, payload validation and sealing
    against one adapter gateway, writing an audit line per state change.
    """

    def __init__(
        self,
        gateway: AdapterGateway,
        policy: IntakePolicy = IntakePolicy(),
        *,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._gateway = verify_gateway(gateway)
        self.policy = policy
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.binder = BindingResolver(self._gateway, policy.retry, sleep)
        self.sealer = SealingService(self._gateway, clock)

    @classmethod
    def from_settings(cls, settings: IntakeSettings) -> "EvidenceIntakeService":
        return cls(build_gateway(settings), IntakePolicy.from_settings(settings))

    # -- persistence helpers ------------------------------------------------

    def _audit(
        self,
        action: str,
        draft: EvidenceDraft,
        correlation_id: str,
        *,
        previous: Optional[DraftStatus] = None,
        reasons: Iterable[str] = (),
        display_id: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> None:
        if not self.policy.audit_log_path:
            return
        ev = build_audit_event(
            action,
            draft,
            correlation_id=correlation_id,
            previous=previous,
            reasons=reasons,
            display_id=display_id,
            error_code=error_code,
            policy=self.policy.audit,
        )
        write_audit_event(self.policy.audit_log_path, ev)

    def _load(self, draft_id: str, correlation_id: str) -> EvidenceDraft:
        raw = call_with_retry(
            lambda: unwrap(self._gateway.get_draft_snapshot(draft_id, correlation_id), correlation_id),
            self.policy.retry,
            label=f"get draft {draft_id}",
            sleep=self._sleep,
        )
        if raw is None:
            raise DraftMissingError(f"draft {draft_id} not found", correlation_id=correlation_id)
        return EvidenceDraft.from_dict(raw)

    def _save(self, draft: EvidenceDraft, expected_version: int, correlation_id: str) -> None:
        unwrap(
            self._gateway.update_draft(draft.draft_id, draft.to_dict(), expected_version, correlation_id),
            correlation_id,
        )

    def _request(self, request: Union[IntakeRequest, Mapping[str, Any]]) -> IntakeRequest:
        if isinstance(request, IntakeRequest):
            req = request
        else:
            req = IntakeRequest.from_dict(request, tenant_id=self.policy.tenant_id)
        if not req.tenant_id.strip() and self.policy.tenant_id:
            req = dataclasses.replace(req, tenant_id=self.policy.tenant_id)
        return req

    # -- operations -----------------------------------------------------------

    def open_draft(
        self,
        request: Union[IntakeRequest, Mapping[str, Any]],
        *,
        correlation_id: Optional[str] = None,
    ) -> EvidenceDraft:
        cid = correlation_id or new_correlation_id()
        req = self._request(request)
        try:
            now = self._clock()
            enforce_intake(req, cid, now)
            binding = self.binder.resolve(req, correlation_id=cid)
            draft = open_draft(req, correlation_id=cid, binding=binding, now=now.isoformat())
        except IntakeError as exc:
            logger.warning("intake rejected correlation_id=%s: %s", cid, exc)
            raise

        draft_id = unwrap(self._gateway.create_draft(draft.to_dict(), cid), cid)
        if not draft_id:
            raise AdapterContractViolationError("create_draft returned no draft id", correlation_id=cid)
        draft = dataclasses.replace(draft, draft_id=str(draft_id))
        logger.info(
            "opened draft %s tenant=%s type=%s scope=%s binding=%s",
            draft.draft_id,
            draft.tenant_id,
            draft.evidence_type.value,
            draft.declared_scope.value,
            draft.binding_mode.value,
        )
        self._audit("draft_opened", draft, cid)
        return draft

    def attach_payload(
        self,
        draft_id: str,
        submission: Union[PayloadSubmission, Mapping[str, Any]],
        *,
        correlation_id: Optional[str] = None,
    ) -> LifecycleOutcome:
        cid = correlation_id or new_correlation_id()
        if not isinstance(submission, PayloadSubmission):
            submission = PayloadSubmission.from_dict(submission)
        draft = self._load(draft_id, cid)
        outcome = attach_payload(draft, submission)
        self._save(outcome.draft, draft.version, cid)
        self._audit(
            "payload_attached",
            outcome.draft,
            cid,
            previous=draft.status,
            reasons=outcome.validation.errors.keys(),
        )
        return outcome

    def seal(self, draft_id: str, *, correlation_id: Optional[str] = None) -> SealResult:
        cid = correlation_id or new_correlation_id()
        draft = self._load(draft_id, cid)
        try:
            result = self.sealer.seal(draft, correlation_id=cid)
        except IntakeError as exc:
            self._audit("seal_rejected", draft, cid, previous=draft.status, reasons=(exc.message,), error_code=exc.code.value)
            raise
        self._audit("sealed", result.draft, cid, previous=draft.status, display_id=result.record.display_id)
        return result

    def abandon(self, draft_id: str, *, reason: str = "", correlation_id: Optional[str] = None) -> EvidenceDraft:
        cid = correlation_id or new_correlation_id()
        draft = self._load(draft_id, cid)
        abandoned = abandon(draft, reason=reason)
        self._save(abandoned, draft.version, cid)
        self._audit("abandoned", abandoned, cid, previous=draft.status, reasons=(reason,))
        return abandoned

    def get_draft(self, draft_id: str, *, correlation_id: Optional[str] = None) -> EvidenceDraft:
        cid = correlation_id or new_correlation_id()
        return self._load(draft_id, cid)

    def get_record(
        self,
        display_id: str,
        *,
        tenant_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[EvidenceRecord]:
        cid = correlation_id or new_correlation_id()
        tenant = (tenant_id or self.policy.tenant_id).strip()
        raw = call_with_retry(
            lambda: unwrap(self._gateway.get_record(tenant, display_id, cid), cid),
            self.policy.retry,
            label=f"get record {display_id}",
            sleep=self._sleep,
        )
        return EvidenceRecord.from_dict(raw) if raw else None

    def require_usable(self, display_id: str, *, tenant_id: Optional[str] = None) -> EvidenceRecord:
        record = self.get_record(display_id, tenant_id=tenant_id)
        if record is None:
            raise DraftMissingError(f"record {display_id} not found")
        return assert_usable(record)

    def create_entity(
        self,
        entity_type: Union[EntityType, str],
        stub: Mapping[str, Any],
        *,
        correlation_id: Optional[str] = None,
    ) -> BindingDecision:
        cid = correlation_id or new_correlation_id()
        et = coerce_enum(EntityType, entity_type, "entity_type")
        return self.binder.create_entity(et, stub, correlation_id=cid)

    def search_entities(
        self,
        entity_type: Union[EntityType, str],
        query: str = "",
        *,
        correlation_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        cid = correlation_id or new_correlation_id()
        et = coerce_enum(EntityType, entity_type, "entity_type")
        return self.binder.search(et, query, correlation_id=cid)

    def submit(
        self,
        request: Union[IntakeRequest, Mapping[str, Any]],
        submission: Union[PayloadSubmission, Mapping[str, Any]],
        *,
        seal: bool = True,
        correlation_id: Optional[str] = None,
    ) -> SubmissionResult:
        """Open, attach and (when the payload validates) seal in one call."""
        cid = correlation_id or new_correlation_id()
        draft = self.open_draft(request, correlation_id=cid)
        outcome = self.attach_payload(draft.draft_id, submission, correlation_id=cid)
        if outcome.quarantined or not seal:
            return SubmissionResult(draft=outcome.draft, validation=outcome.validation)
        sealed = self.seal(draft.draft_id, correlation_id=cid)
        return SubmissionResult(draft=sealed.draft, validation=outcome.validation, record=sealed.record)
