from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

ENV_PREFIX = "EVIDENCE_INTAKE_"
DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _env(name: str, environ: Optional[Mapping[str, str]] = None) -> str:
    source = os.environ if environ is None else environ
    return source.get(ENV_PREFIX + name, "")


def _bool_env(name: str, default: bool = False, environ: Optional[Mapping[str, str]] = None) -> bool:
    v = _env(name, environ)
    if v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _int_env(name: str, default: int, environ: Optional[Mapping[str, str]] = None) -> int:
    v = _env(name, environ).strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {v!r}") from None


def _float_env(name: str, default: float, environ: Optional[Mapping[str, str]] = None) -> float:
    v = _env(name, environ).strip()
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {v!r}") from None


@dataclass(frozen=True)
class IntakeSettings:
    tenant_id: str = ""
    db_path: Optional[str] = None
    audit_log_path: Optional[str] = None
    api_key: str = ""
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.05
    include_payload: bool = False
    redact_payload_keys: Tuple[str, ...] = ()
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "IntakeSettings":
        redact = _env("REDACT_PAYLOAD_KEYS", environ)
        return cls(
            tenant_id=_env("TENANT_ID", environ).strip(),
            db_path=_env("DB_PATH", environ).strip() or None,
            audit_log_path=_env("AUDIT_LOG_PATH", environ).strip() or None,
            api_key=_env("API_KEY", environ),
            retry_max_attempts=max(1, _int_env("RETRY_MAX_ATTEMPTS", 3, environ)),
            retry_base_delay=max(0.0, _float_env("RETRY_BASE_DELAY", 0.05, environ)),
            include_payload=_bool_env("INCLUDE_PAYLOAD", False, environ),
            redact_payload_keys=tuple(k.strip() for k in redact.split(",") if k.strip()),
            log_level=(_env("LOG_LEVEL", environ).strip() or "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=DEFAULT_LOG_FORMAT)
