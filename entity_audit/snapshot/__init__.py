"""Snapshot capture and persistence — canonical payloads and history tables."""

from entity_audit.snapshot.models import AuditLog, Snapshot
from entity_audit.snapshot.serializer import SnapshotSerializer
from entity_audit.snapshot.store import SnapshotStore

__all__ = [
    "AuditLog",
    "Snapshot",
    "SnapshotSerializer",
    "SnapshotStore",
]
