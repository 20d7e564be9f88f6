"""Append-only audit log."""

from hookline.audit.log import AuditLog
from hookline.audit.sink import (
    AuditSink,
    AuditSinkError,
    InMemoryAuditSink,
    JsonlFileAuditSink,
    SqlAuditSink,
)

__all__ = [
    "AuditLog",
    "AuditSink",
    "AuditSinkError",
    "InMemoryAuditSink",
    "JsonlFileAuditSink",
    "SqlAuditSink",
]
