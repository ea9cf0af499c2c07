"""
Base Host
~~~~~~~~~

Abstract contracts between the auditing core and the persistence layer
that owns the entities: a host reports pending mutations before commit
and offers a unit of work with read, write, commit and abort.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any
from uuid import UUID

from entity_audit.core.mutation import PendingMutation
from entity_audit.registry.registry import EntityRegistration
from entity_audit.snapshot.store import SnapshotStore

__all__ = ["BaseHost", "UnitOfWork"]


class UnitOfWork(ABC):
    """
    One atomic scope of entity writes and their audit records.

    Everything done through a unit of work commits or aborts together.
    """

    @property
    @abstractmethod
    def store(self) -> SnapshotStore:
        """Snapshot store bound to this unit of work's transaction."""
        ...

    @abstractmethod
    def load(self, registration: EntityRegistration, entity_id: str) -> Any | None:
        """
        Load a live entity through the host's read path.

        Args:
            registration: The entity type's registry entry.
            entity_id: Identifier as stored in snapshots.

        Returns:
            The entity, or None if it does not exist.
        """
        ...

    @abstractmethod
    def mark_modified(self, entity: Any, rollback_of: UUID | None = None) -> None:
        """
        Submit an entity through the host's write path as MODIFIED.

        The write must happen even if no attribute value changed.

        Args:
            entity: The live entity.
            rollback_of: Snapshot id when the write is a rollback.
        """
        ...

    @abstractmethod
    def flush(self) -> None:
        """
        Send pending entity writes to the database without committing.

        After a flush the transaction holds write locks on the written
        rows, so another writer cannot commit to them before this unit of
        work ends.
        """
        ...

    @abstractmethod
    def commit(self) -> UUID | None:
        """
        Commit entity writes and their audit records atomically.

        Returns:
            Id of the AuditLog recorded by the commit, if any.
        """
        ...

    @abstractmethod
    def abort(self) -> None:
        """Discard every write of this unit of work."""
        ...


class BaseHost(ABC):
    """
    Abstract base class for persistence hosts.

    A host invokes the ChangeInterceptor exactly once per committing
    unit of work, before the commit, and aborts the commit if the
    interceptor raises.
    """

    @abstractmethod
    def install(self) -> None:
        """Start auditing the host's units of work."""
        ...

    @abstractmethod
    def uninstall(self) -> None:
        """Stop auditing the host's units of work."""
        ...

    @abstractmethod
    def unit_of_work(self) -> AbstractContextManager[UnitOfWork]:
        """
        Open a fresh unit of work.

        The unit of work is aborted if the managed block raises and is
        released when the block exits.
        """
        ...

    @abstractmethod
    def pending_mutations(self, session: Any) -> list[PendingMutation]:
        """Return the mutations buffered for a session's current unit of work."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
