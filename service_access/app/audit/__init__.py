"""
Audit package: append-only record of every resolution outcome.

Sinks only append. Reading, reporting and retention belong to external
consumers of the stream.
"""

from .log import (
    AccessEvent, AuditFailure, AuditLog, AuditSink,
    MemoryAuditSink, JsonlAuditSink, PostgresAuditSink,
)

__all__ = [
    "AccessEvent",
    "AuditFailure",
    "AuditLog",
    "AuditSink",
    "MemoryAuditSink",
    "JsonlAuditSink",
    "PostgresAuditSink",
]
