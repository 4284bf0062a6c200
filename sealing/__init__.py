from .canonical import (
    HASH_SCOPE,
    canonical_json,
    compute_metadata_hash,
    compute_payload_hash,
    sha256_hex,
)
from .service import SealingService, SealResult, build_record, format_display_id, retention_ends_at

__all__ = [
    "HASH_SCOPE",
    "SealResult",
    "SealingService",
    "build_record",
    "canonical_json",
    "compute_metadata_hash",
    "compute_payload_hash",
    "format_display_id",
    "retention_ends_at",
    "sha256_hex",
]
