"""entity-audit rollback — restoring entities to recorded snapshots."""

from entity_audit.rollback.engine import RollbackEngine

__all__ = ["RollbackEngine"]
