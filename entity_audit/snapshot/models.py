"""Append-only history tables: audit logs and the snapshots they own."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime, Index, event
from sqlmodel import Field, SQLModel

from entity_audit.core.time import utcnow
from entity_audit.exceptions import StorageFailure

__all__ = ["AuditLog", "Snapshot"]


class AuditLog(SQLModel, table=True):
    """Grouping of every snapshot written by one unit of work."""

    __tablename__ = "entity_audit_logs"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, index=True),
    )
    context: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))


class Snapshot(SQLModel, table=True):
    """Immutable capture of one entity's state at one point in its history."""

    __tablename__ = "entity_snapshots"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        Index(
            "ix_entity_snapshots_entity_history",
            "entity_type_name",
            "entity_id",
            "created_at",
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    entity_id: str = Field(max_length=255)
    entity_type_name: str = Field(max_length=255)
    payload: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    change: str = Field(default="modified", max_length=16)
    rollback_of_id: UUID | None = Field(default=None)
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime, nullable=False)
    )
    audit_log_id: UUID = Field(foreign_key="entity_audit_logs.id", index=True)


def _reject_update(mapper: Any, connection: Any, target: Any) -> None:
    raise StorageFailure(
        f"{type(target).__name__} {target.id} is append-only and cannot be updated"
    )


event.listen(AuditLog, "before_update", _reject_update)
event.listen(Snapshot, "before_update", _reject_update)
