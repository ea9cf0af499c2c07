"""
Snapshot Store
~~~~~~~~~~~~~~

Repository of Snapshot and AuditLog rows bound to the caller's session.
The store never begins, commits or rolls back a transaction: its writes
ride on the host's unit of work so that entity rows and their history
commit or abort together.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from entity_audit.core.mutation import HistoryEntry, MutationState
from entity_audit.core.time import TICK
from entity_audit.exceptions import SnapshotNotFound, StorageFailure
from entity_audit.snapshot.models import AuditLog, Snapshot

__all__ = ["SnapshotStore"]

logger = logging.getLogger(__name__)

# Entity keys per query when computing the next history timestamp.
_KEY_BATCH = 200


def _as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class SnapshotStore:
    """
    Reads and appends audit history through an existing session.

    Args:
        session: A SQLAlchemy ``Session`` (or ``sqlmodel.Session``) whose
            transaction all writes join.
    """

    def __init__(self, session: Any) -> None:
        self._session = session

    @property
    def session(self) -> Any:
        """Return the bound session."""
        return self._session

    # ── Writes ─────────────────────────────────────────────────────

    def save(self, snapshot: Snapshot) -> UUID:
        """
        Stage a snapshot in the current transaction.

        Returns:
            The snapshot id.
        """
        self._session.add(snapshot)
        return snapshot.id

    def save_audit_log(
        self,
        audit_log: AuditLog,
        snapshots: Sequence[Snapshot],
    ) -> AuditLog:
        """
        Stage an audit log together with the snapshots it owns.

        Every snapshot is bound to the log and stamped with its timestamp.

        Raises:
            ValueError: If ``snapshots`` is empty.
        """
        if not snapshots:
            raise ValueError("An audit log must own at least one snapshot")

        self._session.add(audit_log)
        for snapshot in snapshots:
            snapshot.audit_log_id = audit_log.id
            snapshot.created_at = audit_log.created_at
            self.save(snapshot)

        logger.debug(
            "Staged audit log %s with %d snapshot(s)", audit_log.id, len(snapshots)
        )
        return audit_log

    # ── Reads ──────────────────────────────────────────────────────

    def _scalars(self, statement: Any) -> list[Any]:
        try:
            with self._session.no_autoflush:
                return list(self._session.scalars(statement))
        except SQLAlchemyError as exc:
            raise StorageFailure(f"History query failed: {exc}") from exc

    def _scalar(self, statement: Any) -> Any:
        try:
            with self._session.no_autoflush:
                return self._session.scalar(statement)
        except SQLAlchemyError as exc:
            raise StorageFailure(f"History query failed: {exc}") from exc

    def get(self, snapshot_id: UUID | str) -> Snapshot:
        """
        Fetch a snapshot by id.

        Raises:
            SnapshotNotFound: If no such snapshot exists.
        """
        try:
            key = _as_uuid(snapshot_id)
        except ValueError:
            raise SnapshotNotFound(f"Invalid snapshot id: {snapshot_id!r}") from None

        snapshot = self._scalar(select(Snapshot).where(Snapshot.id == key))
        if snapshot is None:
            raise SnapshotNotFound(f"Snapshot not found: {snapshot_id}")
        return snapshot

    def _entity_query(self, type_name: str, entity_id: str) -> Any:
        return select(Snapshot).where(
            Snapshot.entity_type_name == type_name,
            Snapshot.entity_id == entity_id,
        )

    def list_by_entity(self, type_name: str, entity_id: str) -> list[Snapshot]:
        """Return an entity's snapshots, oldest first."""
        return self._scalars(
            self._entity_query(type_name, entity_id).order_by(Snapshot.created_at)
        )

    def history(self, type_name: str, entity_id: str) -> list[HistoryEntry]:
        """Return the read-only history view of an entity, oldest first."""
        return [
            HistoryEntry(
                id=snapshot.id,
                created_at=snapshot.created_at,
                audit_log_id=snapshot.audit_log_id,
                change=MutationState(snapshot.change),
            )
            for snapshot in self.list_by_entity(type_name, entity_id)
        ]

    def latest(self, type_name: str, entity_id: str) -> Snapshot | None:
        """Return the most recent snapshot of an entity, if any."""
        return self._scalar(
            self._entity_query(type_name, entity_id)
            .order_by(Snapshot.created_at.desc())
            .limit(1)
        )

    def latest_before(
        self,
        type_name: str,
        entity_id: str,
        timestamp: datetime,
    ) -> Snapshot | None:
        """Return the newest snapshot taken strictly before ``timestamp``."""
        return self._scalar(
            self._entity_query(type_name, entity_id)
            .where(Snapshot.created_at < _naive_utc(timestamp))
            .order_by(Snapshot.created_at.desc())
            .limit(1)
        )

    def get_audit_log(self, audit_log_id: UUID | str) -> AuditLog | None:
        """Fetch an audit log by id."""
        try:
            key = _as_uuid(audit_log_id)
        except ValueError:
            return None
        return self._scalar(select(AuditLog).where(AuditLog.id == key))

    def snapshots_for(self, audit_log_id: UUID | str) -> list[Snapshot]:
        """Return the snapshots owned by an audit log."""
        return self._scalars(
            select(Snapshot)
            .where(Snapshot.audit_log_id == _as_uuid(audit_log_id))
            .order_by(Snapshot.entity_type_name, Snapshot.entity_id)
        )

    def next_timestamp(
        self,
        keys: Iterable[tuple[str, str]],
        now: datetime,
    ) -> datetime:
        """
        Return a timestamp usable for a new audit log.

        The result is ``now`` unless an existing snapshot of one of the
        given ``(type_name, entity_id)`` keys is at or after it, in which
        case it is one tick past the newest such snapshot.
        """
        pending = list(dict.fromkeys(keys))
        result = now
        for start in range(0, len(pending), _KEY_BATCH):
            batch = pending[start : start + _KEY_BATCH]
            newest = self._scalar(
                select(func.max(Snapshot.created_at)).where(
                    or_(
                        *(
                            and_(
                                Snapshot.entity_type_name == type_name,
                                Snapshot.entity_id == entity_id,
                            )
                            for type_name, entity_id in batch
                        )
                    )
                )
            )
            if newest is not None and newest >= result:
                result = newest + TICK
        return result
