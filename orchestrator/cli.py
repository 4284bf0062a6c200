from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from typing import Any

from adapter_gateway import InMemoryAdapterGateway
from compatibility_registry import (
    COMPATIBILITY_RULES,
    FIELD_SCHEMAS,
    METHOD_PROFILES,
    REGISTRY_VERSION,
    SCOPE_TARGETS,
    audit_registry,
)
from contracts.errors import IntakeError
from orchestrator.pipeline import EvidenceIntakeService, IntakePolicy, SubmissionResult
from orchestrator.settings import IntakeSettings, configure_logging

EXIT_OK = 0
EXIT_QUARANTINED = 2
EXIT_REJECTED = 3


def _load_json(path: str | None) -> dict:
    if path:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    return json.load(sys.stdin)


def _emit(output: dict[str, Any]) -> None:
    print(json.dumps(output, sort_keys=True, ensure_ascii=False))


def _labels(values: Any) -> list[str]:
    return sorted(getattr(v, "value", str(v)) for v in values)


def registry_snapshot() -> dict[str, Any]:
    return {
        "version": REGISTRY_VERSION,
        "evidence_types": {
            t.value: {
                "allowed_scopes": _labels(r.allowed_scopes),
                "allowed_ingestion_methods": _labels(r.allowed_ingestion_methods),
                "allowed_binding_target_types": _labels(r.allowed_binding_target_types),
            }
            for t, r in sorted(COMPATIBILITY_RULES.items(), key=lambda kv: kv[0].value)
        },
        "methods": {
            m.value: {
                "allowed_evidence_types": _labels(p.allowed_evidence_types),
                "requires_external_reference_id": p.requires_external_reference_id,
                "payload_mode": p.payload_mode.value,
                "trust_level": p.trust_level.value,
            }
            for m, p in sorted(METHOD_PROFILES.items(), key=lambda kv: kv[0].value)
        },
        "scope_targets": {s.value: (t.value if t else None) for s, t in SCOPE_TARGETS.items()},
        "field_schemas": {
            t.value: {"required": sorted(s.required), "optional": sorted(s.optional)}
            for t, s in sorted(FIELD_SCHEMAS.items(), key=lambda kv: kv[0].value)
        },
    }


def _settings(args: argparse.Namespace) -> IntakeSettings:
    settings = IntakeSettings.from_env()
    overrides: dict[str, Any] = {}
    if getattr(args, "tenant", None):
        overrides["tenant_id"] = args.tenant
    if getattr(args, "db", None):
        overrides["db_path"] = args.db
    if getattr(args, "audit_log", None):
        overrides["audit_log_path"] = args.audit_log
    return dataclasses.replace(settings, **overrides)


def _result_output(result: SubmissionResult) -> dict[str, Any]:
    return {
        "draft_id": result.draft.draft_id,
        "status": result.draft.status.value,
        "errors": dict(result.validation.errors) if result.validation else {},
        "record": result.record.to_dict() if result.record else None,
    }


def _exit_for(result: SubmissionResult) -> int:
    return EXIT_QUARANTINED if result.quarantined else EXIT_OK


def cmd_registry(args: argparse.Namespace) -> int:
    problems = audit_registry()
    _emit({"registry": registry_snapshot(), "problems": list(problems)})
    return EXIT_REJECTED if problems else EXIT_OK


def cmd_check(args: argparse.Namespace) -> int:
    # Dry run against a throwaway in-memory gateway; nothing is sealed.
    settings = _settings(args)
    service = EvidenceIntakeService(InMemoryAdapterGateway(), IntakePolicy(tenant_id=settings.tenant_id))
    intake = _load_json(args.intake)
    try:
        if args.payload is None:
            draft = service.open_draft(intake)
            _emit({"draft_id": draft.draft_id, "status": draft.status.value, "errors": {}})
            return EXIT_OK
        result = service.submit(intake, _load_json(args.payload), seal=False)
    except IntakeError as exc:
        _emit({"error": exc.to_dict()})
        return EXIT_REJECTED
    _emit(_result_output(result))
    return _exit_for(result)


def cmd_submit(args: argparse.Namespace) -> int:
    service = EvidenceIntakeService.from_settings(_settings(args))
    intake = _load_json(args.intake)
    payload = _load_json(args.payload)
    try:
        result = service.submit(intake, payload, seal=not args.no_seal)
    except IntakeError as exc:
        _emit({"error": exc.to_dict()})
        return EXIT_REJECTED
    _emit(_result_output(result))
    return _exit_for(result)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="evidence-intake")
    parser.add_argument("--log-level")
    sub = parser.add_subparsers(dest="command", required=True)

    p_reg = sub.add_parser("registry", help="print the compatibility registry and check it for consistency")
    p_reg.set_defaults(func=cmd_registry)

    p_check = sub.add_parser("check", help="validate intake (and optionally a payload) without sealing")
    p_check.add_argument("--intake", required=True)
    p_check.add_argument("--payload")
    p_check.add_argument("--tenant")
    p_check.set_defaults(func=cmd_check)

    p_submit = sub.add_parser("submit", help="open, attach and seal a draft")
    p_submit.add_argument("--intake", required=True)
    p_submit.add_argument("--payload")
    p_submit.add_argument("--tenant")
    p_submit.add_argument("--db")
    p_submit.add_argument("--audit-log")
    p_submit.add_argument("--no-seal", action="store_true")
    p_submit.set_defaults(func=cmd_submit)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or IntakeSettings.from_env().log_level)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
