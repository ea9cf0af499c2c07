"""
Rollback Engine
~~~~~~~~~~~~~~~

Restores an entity to a recorded snapshot through the host's normal
write path, so the rollback is itself audited as a MODIFIED mutation in
a new AuditLog. History is never rewritten.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from entity_audit.core.mutation import PREVIOUS, RollbackResult
from entity_audit.exceptions import (
    ConcurrentModification,
    EntityAuditError,
    EntityNotFound,
    RollbackError,
    SnapshotApplyFailure,
    SnapshotNotFound,
    StorageFailure,
)
from entity_audit.hosts.base import BaseHost, UnitOfWork
from entity_audit.observability.metrics import MetricsCollector
from entity_audit.registry.registry import EntityRegistration, EntityRegistry
from entity_audit.snapshot.models import Snapshot
from entity_audit.snapshot.serializer import SnapshotSerializer
from entity_audit.snapshot.store import SnapshotStore

__all__ = ["RollbackEngine", "RollbackTargetSpec"]

logger = logging.getLogger(__name__)

RollbackTargetSpec = UUID | str | datetime


class RollbackEngine:
    """
    Reapplies past snapshots onto live entities.

    Every call runs in a brand-new unit of work. Failures are returned
    inside the RollbackResult; nothing is committed unless the restored
    state and its audit record both are.

    Three checks guard against overwriting a newer state: the optional
    ``expected_version`` against the entity's version attribute, the
    history head (latest snapshot id) read at start and again before
    commit, and the host's own row-version check on flush.
    """

    def __init__(
        self,
        registry: EntityRegistry,
        serializer: SnapshotSerializer,
        host: BaseHost,
        metrics: MetricsCollector | None = None,
        *,
        restore_relations: bool = True,
        verify_history_head: bool = True,
    ) -> None:
        self._registry = registry
        self._serializer = serializer
        self._host = host
        self._metrics = metrics
        self._restore_relations = restore_relations
        self._verify_history_head = verify_history_head

    def rollback(
        self,
        entity_type_name: str,
        entity_id: Any,
        target: RollbackTargetSpec = PREVIOUS,
        *,
        restore_deletion_state: bool = False,
        expected_version: Any = None,
    ) -> RollbackResult:
        """
        Roll an entity back to a recorded snapshot.

        Args:
            entity_type_name: Registered type name.
            entity_id: Identifier of the live entity.
            target: A snapshot id, ``PREVIOUS`` (the snapshot before the
                most recent one), or a datetime selecting the newest
                snapshot strictly before it.
            restore_deletion_state: Also restore the soft-delete marker.
                When False the marker keeps its current value.
            expected_version: Version the caller last saw; a mismatch is
                reported as ConcurrentModification.

        Returns:
            RollbackResult; ``error`` holds the typed failure, if any.
        """
        entity_id = str(entity_id)
        try:
            with self._host.unit_of_work() as uow:
                snapshot_id, audit_log_id = self._run(
                    uow,
                    entity_type_name,
                    entity_id,
                    target,
                    restore_deletion_state,
                    expected_version,
                )
        except StaleDataError as exc:
            error: EntityAuditError = ConcurrentModification(
                "Row version changed before the rollback was written",
                type_name=entity_type_name,
                entity_id=entity_id,
                what_happened=str(exc),
            )
        except SQLAlchemyError as exc:
            error = StorageFailure(f"Rollback write failed: {exc}")
            error.__cause__ = exc
        except EntityAuditError as exc:
            error = exc
        else:
            if self._metrics is not None:
                self._metrics.record_rollback(entity_type_name)
            logger.info(
                "Rolled back %s:%s to snapshot %s (audit log %s)",
                entity_type_name,
                entity_id,
                snapshot_id,
                audit_log_id,
            )
            return RollbackResult(
                entity_type_name=entity_type_name,
                entity_id=entity_id,
                success=True,
                snapshot_id=snapshot_id,
                audit_log_id=audit_log_id,
            )

        if self._metrics is not None:
            self._metrics.increment("rollback_failures")
            if isinstance(error, ConcurrentModification):
                self._metrics.increment("concurrent_modifications")
        logger.error(
            "Rollback of %s:%s failed: %s: %s",
            entity_type_name,
            entity_id,
            type(error).__name__,
            error.args[0] if error.args else "",
        )
        return RollbackResult(
            entity_type_name=entity_type_name,
            entity_id=entity_id,
            success=False,
            error=error,
        )

    # ── Internals ──────────────────────────────────────────────────

    def _run(
        self,
        uow: UnitOfWork,
        type_name: str,
        entity_id: str,
        target: RollbackTargetSpec,
        restore_deletion_state: bool,
        expected_version: Any,
    ) -> tuple[UUID, UUID | None]:
        registration = self._registry.resolve(type_name)
        store = uow.store
        head = store.latest(type_name, entity_id)

        snapshot = self._resolve_target(store, type_name, entity_id, target)
        entity = uow.load(registration, entity_id)
        if entity is None:
            raise EntityNotFound(type_name, entity_id)
        if snapshot.entity_id != entity_id:
            raise SnapshotNotFound(
                f"Snapshot {snapshot.id} belongs to {type_name}:{snapshot.entity_id}, "
                f"not {type_name}:{entity_id}"
            )

        if expected_version is not None:
            self._check_version(registration, entity, entity_id, expected_version)

        self._apply(registration, entity, snapshot, restore_deletion_state)
        uow.mark_modified(entity, rollback_of=snapshot.id)
        # Written before the head is re-read; the row stays locked until commit.
        uow.flush()

        if self._verify_history_head:
            current = store.latest(type_name, entity_id)
            expected_head = head.id if head is not None else None
            actual_head = current.id if current is not None else None
            if actual_head != expected_head:
                raise ConcurrentModification(
                    "History changed while the rollback was in progress",
                    type_name=type_name,
                    entity_id=entity_id,
                    expected=expected_head,
                    actual=actual_head,
                )

        return snapshot.id, uow.commit()

    def _resolve_target(
        self,
        store: SnapshotStore,
        type_name: str,
        entity_id: str,
        target: RollbackTargetSpec,
    ) -> Snapshot:
        if isinstance(target, datetime):
            snapshot = store.latest_before(type_name, entity_id, target)
            if snapshot is None:
                raise SnapshotNotFound(
                    f"No snapshot of {type_name}:{entity_id} before {target.isoformat()}"
                )
            return snapshot

        if target == PREVIOUS:
            snapshots = store.list_by_entity(type_name, entity_id)
            if len(snapshots) < 2:
                raise SnapshotNotFound(
                    f"No snapshot of {type_name}:{entity_id} precedes its current state"
                )
            return snapshots[-2]

        snapshot = store.get(target)
        if snapshot.entity_type_name != type_name:
            raise SnapshotNotFound(
                f"Snapshot {snapshot.id} belongs to type "
                f"{snapshot.entity_type_name!r}, not {type_name!r}"
            )
        return snapshot

    @staticmethod
    def _check_version(
        registration: EntityRegistration,
        entity: Any,
        entity_id: str,
        expected_version: Any,
    ) -> None:
        if registration.version_attribute is None:
            raise RollbackError(
                f"Entity type {registration.type_name!r} has no version attribute; "
                f"expected_version cannot be checked"
            )
        actual = getattr(entity, registration.version_attribute)
        if actual != expected_version:
            raise ConcurrentModification(
                "Entity version does not match the expected version",
                type_name=registration.type_name,
                entity_id=entity_id,
                expected=expected_version,
                actual=actual,
            )

    def _apply(
        self,
        registration: EntityRegistration,
        entity: Any,
        snapshot: Snapshot,
        restore_deletion_state: bool,
    ) -> None:
        try:
            state = self._serializer.decode(snapshot.payload)
            marker = registration.soft_delete_attribute
            if marker and not restore_deletion_state:
                state.fields.pop(marker, None)
            if not self._restore_relations:
                state.relations = {}
            registration.deserializer(entity, state)
        except (ValueError, TypeError, LookupError, AttributeError) as exc:
            raise SnapshotApplyFailure(
                f"Snapshot {snapshot.id} cannot be applied to "
                f"{registration.type_name}:{snapshot.entity_id}: {exc}",
                type_name=registration.type_name,
                entity_id=snapshot.entity_id,
                snapshot_id=snapshot.id,
            ) from exc
        logger.debug(
            "Applied snapshot %s onto %s:%s",
            snapshot.id,
            registration.type_name,
            snapshot.entity_id,
        )
