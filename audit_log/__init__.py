from .audit import AuditEvent, AuditPolicy, build_audit_event, read_audit_events, write_audit_event

__all__ = [
    "AuditEvent",
    "AuditPolicy",
    "build_audit_event",
    "read_audit_events",
    "write_audit_event",
]
