"""
entity-audit — Entity change auditing and rollback for SQLAlchemy.

entity-audit watches the units of work of a SQLAlchemy session, records
an immutable snapshot of every registered entity a commit touches, and
groups them into one audit log per unit of work:

- Snapshots written in the same transaction as the entity rows
- Canonical JSON payloads of scalar fields and relation identifiers
- Rollback to any recorded state, itself recorded as new history
- Optimistic concurrency checks on rollback
- YAML configuration and in-process metrics

Quick Start::

    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker

    from entity_audit import EntityAuditor

    engine = create_engine("sqlite:///app.db")
    Session = sessionmaker(bind=engine)

    auditor = EntityAuditor.default(Session)
    auditor.create_tables(engine)
    auditor.register_model(Post, soft_delete_attribute="deleted_at")

    with Session() as session:
        session.add(Post(id=1, title="A"))
        session.commit()

    auditor.rollback("Post", 1).unwrap()

:license: Apache-2.0
"""

from entity_audit.core.auditor import EntityAuditor
from entity_audit.core.interceptor import ChangeInterceptor
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
from entity_audit.exceptions import (
    ConcurrentModification,
    EntityAuditError,
    EntityNotFound,
    RollbackError,
    SerializationFailure,
    SnapshotApplyFailure,
    SnapshotNotFound,
    StorageFailure,
    UnknownEntityType,
)
from entity_audit.hosts.base import BaseHost, UnitOfWork
from entity_audit.hosts.sqlalchemy_host import SQLAlchemyHost
from entity_audit.registry.registry import EntityRegistration, EntityRegistry
from entity_audit.rollback.engine import RollbackEngine
from entity_audit.snapshot.models import AuditLog, Snapshot
from entity_audit.snapshot.serializer import SnapshotSerializer
from entity_audit.snapshot.store import SnapshotStore

__version__ = "0.1.0"
__license__ = "Apache-2.0"

__all__ = [
    # Main class
    "EntityAuditor",
    # Components
    "EntityRegistry",
    "EntityRegistration",
    "SnapshotSerializer",
    "SnapshotStore",
    "ChangeInterceptor",
    "RollbackEngine",
    # Hosts
    "BaseHost",
    "UnitOfWork",
    "SQLAlchemyHost",
    # Data models
    "AuditLog",
    "Snapshot",
    "MutationState",
    "PendingMutation",
    "EntityState",
    "HistoryEntry",
    "RollbackResult",
    "RollbackTarget",
    "PREVIOUS",
    "AuditMetrics",
    # Errors
    "EntityAuditError",
    "UnknownEntityType",
    "SerializationFailure",
    "StorageFailure",
    "RollbackError",
    "SnapshotNotFound",
    "SnapshotApplyFailure",
    "EntityNotFound",
    "ConcurrentModification",
    # Version
    "__version__",
]
