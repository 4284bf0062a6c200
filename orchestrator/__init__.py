from .pipeline import (
    EvidenceIntakeService,
    IntakePolicy,
    SubmissionResult,
    build_gateway,
    new_correlation_id,
)
from .settings import IntakeSettings, configure_logging

__all__ = [
    "EvidenceIntakeService",
    "IntakePolicy",
    "IntakeSettings",
    "SubmissionResult",
    "build_gateway",
    "configure_logging",
    "new_correlation_id",
]
