"""
SQLAlchemy Host
~~~~~~~~~~~~~~~

Wires the ChangeInterceptor into SQLAlchemy session events.

Mutations are buffered per session in ``Session.info`` by
``before_flush``; ``before_commit`` flushes, hands the buffer to the
interceptor and lets the commit's own flush write the staged AuditLog
and Snapshots. Whatever the interceptor raises aborts the commit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any
from uuid import UUID

from sqlalchemy import event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.attributes import flag_modified

from entity_audit.core.interceptor import ChangeInterceptor
from entity_audit.core.mutation import MutationState, PendingMutation
from entity_audit.exceptions import RollbackError
from entity_audit.hosts.base import BaseHost, UnitOfWork
from entity_audit.registry.registry import EntityRegistration
from entity_audit.snapshot.store import SnapshotStore

__all__ = ["SQLAlchemyHost", "SessionUnitOfWork"]

logger = logging.getLogger(__name__)

PENDING_KEY = "entity_audit.pending"
CONTEXT_KEY = "entity_audit.context"
LAST_AUDIT_LOG_KEY = "entity_audit.last_audit_log_id"


def _force_update(entity: Any) -> None:
    """Flag one loaded column so the next flush emits an UPDATE."""
    state = sa_inspect(entity)
    mapper = state.mapper
    for prop in mapper.column_attrs:
        if prop.key not in state.dict:
            continue
        if any(col.primary_key for col in prop.columns):
            continue
        if any(col is mapper.version_id_col for col in prop.columns):
            continue
        flag_modified(entity, prop.key)
        return


class SessionUnitOfWork(UnitOfWork):
    """A unit of work backed by one SQLAlchemy session."""

    def __init__(self, session: Session, host: SQLAlchemyHost) -> None:
        self._session = session
        self._host = host
        self._store = SnapshotStore(session)

    @property
    def session(self) -> Session:
        """Return the underlying session."""
        return self._session

    @property
    def store(self) -> SnapshotStore:
        return self._store

    def load(self, registration: EntityRegistration, entity_id: str) -> Any | None:
        if registration.loader is None:
            raise RollbackError(
                f"Entity type {registration.type_name!r} has no read path registered"
            )
        try:
            return registration.loader(self._session, entity_id)
        except ValueError:
            # Identifier text that cannot be a key of this type.
            return None

    def mark_modified(self, entity: Any, rollback_of: UUID | None = None) -> None:
        self._host.record(
            self._session, entity, MutationState.MODIFIED, rollback_of=rollback_of
        )
        _force_update(entity)

    def flush(self) -> None:
        self._session.flush()

    def commit(self) -> UUID | None:
        self._session.commit()
        return self._session.info.pop(LAST_AUDIT_LOG_KEY, None)

    def abort(self) -> None:
        self._session.rollback()


class SQLAlchemyHost(BaseHost):
    """
    Host adapter for SQLAlchemy 2.x sessions.

    Args:
        session_factory: Callable returning a new ``Session``; usually a
            ``sessionmaker``.
        interceptor: The ChangeInterceptor to invoke before each commit.
        event_target: What to attach session events to. Defaults to
            ``session_factory`` when it is a ``sessionmaker``, otherwise
            to the ``Session`` class (every session in the process).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        interceptor: ChangeInterceptor,
        event_target: Any = None,
    ) -> None:
        self._session_factory = session_factory
        self._interceptor = interceptor
        if event_target is None:
            event_target = (
                session_factory if isinstance(session_factory, sessionmaker) else Session
            )
        self._event_target = event_target
        self._installed = False

    @property
    def installed(self) -> bool:
        """Whether session events are currently attached."""
        return self._installed

    @property
    def session_factory(self) -> Callable[[], Session]:
        """Return the factory used to open units of work."""
        return self._session_factory

    def _listeners(self) -> list[tuple[str, Callable[..., Any]]]:
        return [
            ("before_flush", self._before_flush),
            ("before_commit", self._before_commit),
            ("after_transaction_end", self._after_transaction_end),
        ]

    def install(self) -> None:
        if self._installed:
            return
        for name, listener in self._listeners():
            event.listen(self._event_target, name, listener)
        self._installed = True
        logger.debug("Installed audit listeners on %r", self._event_target)

    def uninstall(self) -> None:
        if not self._installed:
            return
        for name, listener in self._listeners():
            event.remove(self._event_target, name, listener)
        self._installed = False
        logger.debug("Removed audit listeners from %r", self._event_target)

    @contextmanager
    def unit_of_work(self) -> Iterator[SessionUnitOfWork]:
        session = self._session_factory()
        try:
            yield SessionUnitOfWork(session, self)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ── Per-session state ──────────────────────────────────────────

    def pending_mutations(self, session: Session) -> list[PendingMutation]:
        return list(session.info.get(PENDING_KEY, {}).values())

    def annotate(self, session: Session, **context: Any) -> None:
        """Attach metadata to the AuditLog of the session's current unit of work."""
        session.info.setdefault(CONTEXT_KEY, {}).update(context)

    def record(
        self,
        session: Session,
        entity: Any,
        state: MutationState,
        captured: dict[str, Any] | None = None,
        rollback_of: UUID | None = None,
    ) -> None:
        """Buffer one mutation, merging it with an earlier one of the same object."""
        buffer: dict[int, PendingMutation] = session.info.setdefault(PENDING_KEY, {})
        existing = buffer.get(id(entity))
        if existing is None:
            buffer[id(entity)] = PendingMutation(
                entity=entity, state=state, captured=captured, rollback_of=rollback_of
            )
            return
        merged = existing.state.merge(state)
        if merged is None:
            del buffer[id(entity)]
            return
        existing.state = merged
        existing.captured = captured or existing.captured
        existing.rollback_of = rollback_of or existing.rollback_of

    @staticmethod
    def _clear(session: Session) -> None:
        session.info.pop(PENDING_KEY, None)
        session.info.pop(CONTEXT_KEY, None)

    # ── Session events ─────────────────────────────────────────────

    def _before_flush(self, session: Session, flush_context: Any, instances: Any) -> None:
        if not self._interceptor.enabled:
            return
        for obj in list(session.new):
            if self._interceptor.is_auditable(obj):
                self.record(session, obj, MutationState.CREATED)
        for obj in list(session.dirty):
            if self._interceptor.is_auditable(obj) and session.is_modified(obj):
                self.record(session, obj, MutationState.MODIFIED)
        for obj in list(session.deleted):
            if self._interceptor.is_auditable(obj):
                self.record(
                    session,
                    obj,
                    MutationState.DELETED,
                    captured=self._interceptor.capture(obj),
                )

    def _before_commit(self, session: Session) -> None:
        if session.in_nested_transaction():
            return
        session.info.pop(LAST_AUDIT_LOG_KEY, None)
        if not self._interceptor.enabled:
            return

        session.flush()
        buffer: dict[int, PendingMutation] = session.info.get(PENDING_KEY, {})
        if not buffer:
            return

        mutations = []
        for mutation in buffer.values():
            state = sa_inspect(mutation.entity)
            # Objects created inside a rolled-back savepoint are transient again.
            if state.persistent or state.deleted or state.was_deleted:
                mutations.append(mutation)

        audit_log = self._interceptor.intercept(
            mutations, SnapshotStore(session), session.info.get(CONTEXT_KEY)
        )
        buffer.clear()
        if audit_log is not None:
            session.info[LAST_AUDIT_LOG_KEY] = audit_log.id

    def _after_transaction_end(self, session: Session, transaction: Any) -> None:
        if transaction.parent is None:
            self._clear(session)

    def __repr__(self) -> str:
        return f"<SQLAlchemyHost installed={self._installed}>"
