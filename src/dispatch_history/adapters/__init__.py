"""Adapters for dispatch-history.

- AuditLogRepository: append-only access to the audit log
- LiveRecordRepository: audited mutations of live records
- HttpRemoteStore: remote deletes issued by the tombstone drain loop
"""

from dispatch_history.adapters.audit_log import AuditLogRepository
from dispatch_history.adapters.live_records import LiveRecordRepository
from dispatch_history.adapters.remote_store import HttpRemoteStore, RemoteDeleteError

__all__ = [
    "AuditLogRepository",
    "HttpRemoteStore",
    "LiveRecordRepository",
    "RemoteDeleteError",
]
