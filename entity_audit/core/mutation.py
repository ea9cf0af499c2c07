"""
Mutation & Result Data Models
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Defines the dataclasses that flow between the host adapter, the change
interceptor and the rollback engine: PendingMutation (input to an audit
pass), EntityState (what a registry serializer yields), HistoryEntry and
RollbackResult (outputs).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from entity_audit.exceptions import EntityAuditError

__all__ = [
    "MutationState",
    "PendingMutation",
    "EntityState",
    "RollbackTarget",
    "PREVIOUS",
    "HistoryEntry",
    "RollbackResult",
    "AuditMetrics",
]


class MutationState(StrEnum):
    """
    Kind of change a unit of work applied to an entity.

    - CREATED: The entity was inserted.
    - MODIFIED: One or more attributes or relations changed.
    - DELETED: The entity was removed; its snapshot holds the last
      known state before deletion.
    """

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"

    def merge(self, later: MutationState) -> MutationState | None:
        """
        Collapse two mutations of one entity inside a single unit of work.

        Returns None when the entity was created and then deleted: its row
        never outlives the unit of work, so it gets no history at all.
        """
        if later is MutationState.DELETED:
            if self is MutationState.CREATED:
                return None
            return MutationState.DELETED
        if self is MutationState.CREATED:
            return MutationState.CREATED
        return later


@dataclass
class PendingMutation:
    """
    One entity mutation awaiting commit.

    Attributes:
        entity: The live entity instance.
        state: What happened to it.
        captured: Payload serialized before a deletion was flushed, used
            instead of the live state for DELETED mutations.
        rollback_of: Snapshot id when this mutation is a rollback.
    """

    entity: Any
    state: MutationState
    captured: dict[str, Any] | None = None
    rollback_of: UUID | None = None


@dataclass
class EntityState:
    """
    Ownable state of one entity: scalar fields plus relation identifiers.

    Relation values are a single identifier, None, or a list of
    identifiers; never nested entities.
    """

    fields: dict[str, Any] = field(default_factory=dict)
    relations: dict[str, Any] = field(default_factory=dict)


class RollbackTarget(StrEnum):
    """Symbolic rollback targets."""

    PREVIOUS = "previous"


PREVIOUS = RollbackTarget.PREVIOUS


@dataclass(frozen=True)
class HistoryEntry:
    """Read-only view of one snapshot in an entity's history."""

    id: UUID
    created_at: datetime
    audit_log_id: UUID
    change: MutationState

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "id": str(self.id),
            "created_at": self.created_at.isoformat(),
            "audit_log_id": str(self.audit_log_id),
            "change": self.change.value,
        }


@dataclass
class RollbackResult:
    """
    The outcome of a rollback request.

    Attributes:
        entity_type_name: Type of the entity rolled back.
        entity_id: Identifier of the entity rolled back.
        success: Whether the restored state was committed.
        snapshot_id: The snapshot whose state was applied.
        audit_log_id: The new audit log that recorded the rollback.
        error: The typed error when the rollback did not happen.
    """

    entity_type_name: str
    entity_id: str
    success: bool
    snapshot_id: UUID | None = None
    audit_log_id: UUID | None = None
    error: EntityAuditError | None = None

    def unwrap(self) -> RollbackResult:
        """Return self on success, raise the captured error otherwise."""
        if self.error is not None:
            raise self.error
        return self


@dataclass
class AuditMetrics:
    """Prometheus-style metrics snapshot."""

    units_of_work: int = 0
    snapshots_recorded: int = 0
    serialization_failures: int = 0
    rollbacks: int = 0
    rollback_failures: int = 0
    concurrent_modifications: int = 0
    rollbacks_by_type: dict[str, int] = field(default_factory=dict)

    def to_prometheus(self) -> str:
        """Render as Prometheus text exposition format."""
        lines: list[str] = [
            f"entity_audit_units_of_work {self.units_of_work}",
            f"entity_audit_snapshots_recorded {self.snapshots_recorded}",
            f"entity_audit_serialization_failures {self.serialization_failures}",
            f"entity_audit_rollbacks {self.rollbacks}",
            f"entity_audit_rollback_failures {self.rollback_failures}",
            f"entity_audit_concurrent_modifications {self.concurrent_modifications}",
        ]
        for type_name, count in sorted(self.rollbacks_by_type.items()):
            lines.append(
                f'entity_audit_rollbacks_by_type{{entity_type="{type_name}"}} {count}'
            )
        return "\n".join(lines) + "\n"
