from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Tuple

from contracts.schemas import DraftStatus, EvidenceDraft

logger = logging.getLogger(__name__)


def _unique_sorted(items: Iterable[str]) -> Tuple[str, ...]:
    return tuple(sorted({s for s in items if isinstance(s, str) and s.strip()}))


@dataclass(frozen=True)
class AuditPolicy:
    include_payload: bool = False
    redact_payload_keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AuditEvent:
    ts_utc: str
    correlation_id: str
    tenant_id: str
    draft_id: str
    action: str
    from_status: Optional[str]
    to_status: Optional[str]
    version: int
    reasons: Tuple[str, ...]
    display_id: Optional[str] = None
    error_code: Optional[str] = None
    payload_snapshot: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts_utc": self.ts_utc,
            "correlation_id": self.correlation_id,
            "tenant_id": self.tenant_id,
            "draft_id": self.draft_id,
            "action": self.action,
            "status": {"from": self.from_status, "to": self.to_status},
            "version": self.version,
            "reasons": list(self.reasons),
            "display_id": self.display_id,
            "error_code": self.error_code,
            "payload_snapshot": self.payload_snapshot,
        }


def _snapshot(payload: Mapping[str, Any], policy: AuditPolicy) -> dict[str, Any] | None:
    if not policy.include_payload:
        return None
    redactions = {k for k in policy.redact_payload_keys if isinstance(k, str) and k}
    return {k: ("[REDACTED]" if str(k) in redactions else v) for k, v in payload.items()}


def build_audit_event(
    action: str,
    draft: EvidenceDraft,
    *,
    correlation_id: str,
    previous: Optional[DraftStatus] = None,
    reasons: Iterable[str] = (),
    display_id: Optional[str] = None,
    error_code: Optional[str] = None,
    policy: AuditPolicy = AuditPolicy(),
) -> AuditEvent:
    return AuditEvent(
        ts_utc=datetime.now(timezone.utc).isoformat(),
        correlation_id=correlation_id,
        tenant_id=draft.tenant_id,
        draft_id=draft.draft_id,
        action=action,
        from_status=previous.value if previous is not None else None,
        to_status=draft.status.value,
        version=draft.version,
        reasons=_unique_sorted(reasons),
        display_id=display_id,
        error_code=error_code,
        payload_snapshot=_snapshot(draft.payload, policy),
    )


def write_audit_event(path: str, event: AuditEvent) -> None:
    line = json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False)
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding="utf-8") as f:
        f.write(line + "\n")
    logger.debug("audit %s draft=%s -> %s", event.action, event.draft_id, path)


def read_audit_events(path: str) -> list[dict[str, Any]]:
    target = Path(path)
    if not target.exists():
        return []
    with target.open("r", encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]
