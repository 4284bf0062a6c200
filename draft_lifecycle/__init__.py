from .state_machine import (
    QUARANTINE_REASON,
    TRANSITIONS,
    LifecycleOutcome,
    abandon,
    assert_sealable,
    attach_payload,
    can_transition,
    mark_sealed,
    open_draft,
    transition,
    utc_now,
)

__all__ = [
    "QUARANTINE_REASON",
    "TRANSITIONS",
    "LifecycleOutcome",
    "abandon",
    "assert_sealable",
    "attach_payload",
    "can_transition",
    "mark_sealed",
    "open_draft",
    "transition",
    "utc_now",
]
