"""
Change Interceptor
~~~~~~~~~~~~~~~~~~

Turns the pending mutations of one unit of work into one AuditLog and
one Snapshot per auditable entity, staged in the same transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from entity_audit.core.mutation import MutationState, PendingMutation
from entity_audit.core.time import utcnow
from entity_audit.exceptions import SerializationFailure
from entity_audit.observability.metrics import MetricsCollector
from entity_audit.registry.registry import EntityRegistration, EntityRegistry
from entity_audit.snapshot.models import AuditLog, Snapshot
from entity_audit.snapshot.serializer import SnapshotSerializer
from entity_audit.snapshot.store import SnapshotStore

__all__ = ["ChangeInterceptor"]

logger = logging.getLogger(__name__)


@dataclass
class _Change:
    """One entity's collapsed mutation within a pass."""

    registration: EntityRegistration
    entity_id: str
    entity: Any
    state: MutationState
    captured: dict[str, Any] | None
    rollback_of: UUID | None


class ChangeInterceptor:
    """
    Audits a unit of work in a single pass before it commits.

    The interceptor holds no per-unit-of-work state; everything it
    produces is handed to the SnapshotStore bound to the host session.
    Any exception raised here must abort the host commit.
    """

    def __init__(
        self,
        registry: EntityRegistry,
        serializer: SnapshotSerializer,
        metrics: MetricsCollector | None = None,
        *,
        enabled: bool = True,
        log_payloads: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._serializer = serializer
        self._metrics = metrics
        self._enabled = enabled
        self._log_payloads = log_payloads
        self._clock = clock

    @property
    def enabled(self) -> bool:
        """Whether audit passes produce history."""
        return self._enabled

    @property
    def registry(self) -> EntityRegistry:
        """Return the registry consulted for auditable types."""
        return self._registry

    def is_auditable(self, entity: Any) -> bool:
        """Check if an entity's type is registered."""
        return self._registry.is_auditable(entity)

    def capture(self, entity: Any) -> dict[str, Any] | None:
        """
        Serialize an entity now, e.g. just before its deletion is flushed.

        Returns:
            The canonical payload, or None if the entity is not auditable.
        """
        type_name = self._registry.type_name_for(entity)
        if type_name is None:
            return None
        registration = self._registry.resolve(type_name)
        entity_id = registration.identifier_extractor(entity)
        return self._serialize(entity, registration, entity_id)

    def intercept(
        self,
        mutations: Iterable[PendingMutation],
        store: SnapshotStore,
        context: dict[str, Any] | None = None,
    ) -> AuditLog | None:
        """
        Run the audit pass for one unit of work.

        Args:
            mutations: Pending mutations reported by the host.
            store: Store bound to the host's active transaction.
            context: Optional metadata recorded on the AuditLog.

        Returns:
            The staged AuditLog, or None if nothing auditable changed.

        Raises:
            SerializationFailure: If any entity cannot be captured.
        """
        if not self._enabled:
            return None

        changes = self._collapse(mutations)
        if not changes:
            return None

        payloads: list[tuple[_Change, dict[str, Any]]] = []
        for change in changes.values():
            if change.state is MutationState.DELETED and change.captured is not None:
                payload = change.captured
            else:
                payload = self._serialize(
                    change.entity, change.registration, change.entity_id
                )
            payloads.append((change, payload))

        created_at = store.next_timestamp(changes.keys(), self._clock())
        audit_log = AuditLog(created_at=created_at, context=context or None)
        snapshots = [
            Snapshot(
                entity_id=change.entity_id,
                entity_type_name=change.registration.type_name,
                payload=payload,
                change=change.state.value,
                rollback_of_id=change.rollback_of,
                created_at=created_at,
                audit_log_id=audit_log.id,
            )
            for change, payload in payloads
        ]
        store.save_audit_log(audit_log, snapshots)

        if self._metrics is not None:
            self._metrics.increment("units_of_work")
            self._metrics.increment("snapshots_recorded", len(snapshots))

        logger.info(
            "Audited unit of work: audit log %s with %d snapshot(s)",
            audit_log.id,
            len(snapshots),
        )
        return audit_log

    def _collapse(self, mutations: Iterable[PendingMutation]) -> dict[tuple[str, str], _Change]:
        """Keep auditable mutations, one per entity, in first-seen order."""
        changes: dict[tuple[str, str], _Change] = {}
        for mutation in mutations:
            type_name = self._registry.type_name_for(mutation.entity)
            if type_name is None:
                continue
            registration = self._registry.resolve(type_name)
            entity_id = registration.identifier_extractor(mutation.entity)
            key = (type_name, entity_id)

            existing = changes.get(key)
            if existing is None:
                changes[key] = _Change(
                    registration=registration,
                    entity_id=entity_id,
                    entity=mutation.entity,
                    state=mutation.state,
                    captured=mutation.captured,
                    rollback_of=mutation.rollback_of,
                )
                continue

            merged = existing.state.merge(mutation.state)
            if merged is None:
                del changes[key]
                continue
            existing.state = merged
            existing.entity = mutation.entity
            existing.captured = mutation.captured or existing.captured
            existing.rollback_of = mutation.rollback_of or existing.rollback_of
        return changes

    def _serialize(
        self,
        entity: Any,
        registration: EntityRegistration,
        entity_id: str,
    ) -> dict[str, Any]:
        try:
            payload = self._serializer.serialize(entity, registration, entity_id)
        except SerializationFailure:
            if self._metrics is not None:
                self._metrics.increment("serialization_failures")
            logger.error(
                "Aborting unit of work: %s:%s cannot be serialized",
                registration.type_name,
                entity_id,
            )
            raise

        if self._log_payloads:
            logger.debug(
                "Captured %s:%s %s",
                registration.type_name,
                entity_id,
                self._serializer.dumps(payload),
            )
        return payload
