"""Audit trail of bus events."""

from orchestra.observability.audit_log import AuditLog

__all__ = ["AuditLog"]
