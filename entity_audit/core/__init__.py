"""entity-audit core module — data models, interceptor, and auditor facade."""

from entity_audit.core.mutation import (
    PREVIOUS,
    AuditMetrics,
    EntityState,
    HistoryEntry,
    MutationState,
    PendingMutation,
    RollbackResult,
    RollbackTarget,
)
from entity_audit.core.time import TICK, utcnow

__all__ = [
    "MutationState",
    "PendingMutation",
    "EntityState",
    "RollbackTarget",
    "PREVIOUS",
    "HistoryEntry",
    "RollbackResult",
    "AuditMetrics",
    "TICK",
    "utcnow",
]
