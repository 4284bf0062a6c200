from .resolver import (
    BindingDecision,
    BindingResolver,
    apply_binding,
    assert_usable,
    identity_conflicts,
    reconciliation_status,
    row_match_statuses,
    select_row_identifier,
)

__all__ = [
    "BindingDecision",
    "BindingResolver",
    "apply_binding",
    "assert_usable",
    "identity_conflicts",
    "reconciliation_status",
    "row_match_statuses",
    "select_row_identifier",
]
