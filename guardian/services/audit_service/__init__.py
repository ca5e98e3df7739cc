"""Audit Service: append-only trail of alert and filter changes.

Alerts are never deleted, and every creation, guardian state transition and
custom filter change is recorded in a hash-chained log that can be verified
for tampering.
"""

from .audit_logger import AuditLogger, AuditAction, AuditEntity, AuditEntry

__all__ = [
    "AuditLogger",
    "AuditAction",
    "AuditEntity",
    "AuditEntry",
]
