"""
EntityAuditor — Main Auditor Class
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

The primary entry point for entity-audit. Assembles the registry,
serializer, interceptor, host adapter and rollback engine from a
validated configuration and exposes the public API for registering
entities, reading history and rolling back.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Iterable
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session
from sqlmodel import SQLModel

from entity_audit.config.defaults import DEFAULT_CONFIG
from entity_audit.config.loader import load_config, load_config_from_dict
from entity_audit.config.schema import AuditConfig
from entity_audit.core.interceptor import ChangeInterceptor
from entity_audit.core.mutation import (
    PREVIOUS,
    AuditMetrics,
    HistoryEntry,
    PendingMutation,
    RollbackResult,
)
from entity_audit.exceptions import ConfigValidationError
from entity_audit.hosts.sqlalchemy_host import SQLAlchemyHost
from entity_audit.observability.metrics import MetricsCollector
from entity_audit.registry.registry import EntityRegistration, EntityRegistry
from entity_audit.registry.sqlalchemy_models import model_registration
from entity_audit.rollback.engine import RollbackEngine, RollbackTargetSpec
from entity_audit.snapshot.models import AuditLog, Snapshot
from entity_audit.snapshot.serializer import SnapshotSerializer
from entity_audit.snapshot.store import SnapshotStore

__all__ = ["EntityAuditor"]

logger = logging.getLogger(__name__)


class EntityAuditor:
    """
    Main EntityAuditor class — entry point for auditing and rollback.

    Installing the auditor attaches session events to the given
    session factory; from then on every commit through it records one
    AuditLog per unit of work that touched a registered entity.

    Args:
        session_factory: Callable returning a new SQLAlchemy ``Session``,
            usually a ``sessionmaker``.
        config: Validated configuration; defaults apply when omitted.
        install: Attach session events immediately.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: AuditConfig | None = None,
        install: bool = True,
    ) -> None:
        self._config = config or AuditConfig()
        self._session_factory = session_factory

        # ── Subsystems ────────────────────────────────────────────
        self._metrics = MetricsCollector()
        self._registry = EntityRegistry()
        self._serializer = SnapshotSerializer(
            excluded_fields=self._config.audit.excluded_fields,
            capture_relations=self._config.audit.capture_relations,
        )
        self._interceptor = ChangeInterceptor(
            registry=self._registry,
            serializer=self._serializer,
            metrics=self._collector,
            enabled=self._config.audit.enabled,
            log_payloads=self._config.observability.log_payloads,
        )
        self._host = SQLAlchemyHost(session_factory, self._interceptor)
        self._engine = RollbackEngine(
            registry=self._registry,
            serializer=self._serializer,
            host=self._host,
            metrics=self._collector,
            restore_relations=self._config.rollback.restore_relations,
            verify_history_head=self._config.rollback.verify_history_head,
        )

        # ── Initialize ────────────────────────────────────────────
        self._load_entities_from_config()
        if install:
            self.install()

    # ── Properties ─────────────────────────────────────────────────

    @property
    def version(self) -> str:
        """Return the entity-audit version string."""
        from entity_audit import __version__

        return __version__

    @property
    def config(self) -> AuditConfig:
        """Return the active configuration."""
        return self._config

    @property
    def registry(self) -> EntityRegistry:
        return self._registry

    @property
    def interceptor(self) -> ChangeInterceptor:
        return self._interceptor

    @property
    def host(self) -> SQLAlchemyHost:
        return self._host

    @property
    def engine(self) -> RollbackEngine:
        return self._engine

    @property
    def _collector(self) -> MetricsCollector | None:
        return self._metrics if self._config.observability.metrics_enabled else None

    # ── Construction ───────────────────────────────────────────────

    @classmethod
    def from_config(
        cls, path: str, session_factory: Callable[[], Session]
    ) -> EntityAuditor:
        """
        Create an EntityAuditor from a YAML config file.

        Args:
            path: Path to entity_audit.yaml.
            session_factory: Factory for the sessions to audit.

        Returns:
            Configured and installed EntityAuditor.
        """
        config = load_config(path)
        return cls(session_factory, config=config)

    @classmethod
    def default(cls, session_factory: Callable[[], Session]) -> EntityAuditor:
        """Create an EntityAuditor with default settings."""
        config = load_config_from_dict(DEFAULT_CONFIG)
        return cls(session_factory, config=config)

    def _load_entities_from_config(self) -> None:
        """Register mapped models listed in the configuration."""
        for entry in self._config.entities:
            module_name, _, attr = entry.model.partition(":")
            try:
                model = getattr(importlib.import_module(module_name), attr)
            except (ImportError, AttributeError) as exc:
                raise ConfigValidationError(
                    f"Cannot import entity model {entry.model!r}: {exc}"
                ) from exc
            self.register_model(
                model,
                type_name=entry.type_name,
                exclude=entry.exclude,
                soft_delete_attribute=entry.soft_delete_attribute,
            )

    # ── Registration ───────────────────────────────────────────────

    def register(
        self,
        type_name: str,
        identifier_extractor: Callable[[Any], str],
        serializer: Callable[[Any], Any],
        deserializer: Callable[[Any, Any], None],
        **options: Any,
    ) -> EntityRegistration:
        """
        Register an entity type with explicit callables.

        See ``EntityRegistry.register`` for the accepted options.
        """
        return self._registry.register(
            type_name, identifier_extractor, serializer, deserializer, **options
        )

    def register_model(
        self,
        model: type,
        *,
        type_name: str | None = None,
        exclude: Iterable[str] = (),
        soft_delete_attribute: str | None = None,
    ) -> EntityRegistration:
        """
        Register a SQLAlchemy mapped class by mapper inspection.

        Args:
            model: The mapped class.
            type_name: Name stored with snapshots (default: class name).
            exclude: Attributes never captured nor restored.
            soft_delete_attribute: Attribute holding the soft-delete marker.

        Returns:
            The stored registration.
        """
        registration = model_registration(
            model,
            type_name=type_name,
            exclude=exclude,
            capture_relations=self._config.audit.capture_relations,
            soft_delete_attribute=soft_delete_attribute,
        )
        return self._registry.add(registration)

    def auditable(
        self,
        type_name: str | None = None,
        *,
        exclude: Iterable[str] = (),
        soft_delete_attribute: str | None = None,
    ) -> Callable[[type], type]:
        """
        Class decorator registering a mapped model.

        Example::

            @auditor.auditable(soft_delete_attribute="deleted_at")
            class Post(Base):
                ...
        """

        def decorator(cls: type) -> type:
            self.register_model(
                cls,
                type_name=type_name,
                exclude=exclude,
                soft_delete_attribute=soft_delete_attribute,
            )
            return cls

        return decorator

    # ── Primary API: Rollback ──────────────────────────────────────

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

        See ``RollbackEngine.rollback``.
        """
        return self._engine.rollback(
            entity_type_name,
            entity_id,
            target,
            restore_deletion_state=restore_deletion_state,
            expected_version=expected_version,
        )

    # ── Primary API: History ───────────────────────────────────────

    def history(self, entity_type_name: str, entity_id: Any) -> list[HistoryEntry]:
        """Return an entity's history, oldest first."""
        with self._session_factory() as session:
            return SnapshotStore(session).history(entity_type_name, str(entity_id))

    def list_by_entity(self, entity_type_name: str, entity_id: Any) -> list[Snapshot]:
        """Return an entity's snapshots, oldest first."""
        with self._session_factory() as session:
            return SnapshotStore(session).list_by_entity(
                entity_type_name, str(entity_id)
            )

    def get_snapshot(self, snapshot_id: UUID | str) -> Snapshot:
        """
        Fetch one snapshot.

        Raises:
            SnapshotNotFound: If no such snapshot exists.
        """
        with self._session_factory() as session:
            return SnapshotStore(session).get(snapshot_id)

    def get_audit_log(self, audit_log_id: UUID | str) -> AuditLog | None:
        """Fetch an audit log by id."""
        with self._session_factory() as session:
            return SnapshotStore(session).get_audit_log(audit_log_id)

    def snapshots_for(self, audit_log_id: UUID | str) -> list[Snapshot]:
        """Return the snapshots recorded by one audit log."""
        with self._session_factory() as session:
            return SnapshotStore(session).snapshots_for(audit_log_id)

    # ── Primary API: Units of work ─────────────────────────────────

    def annotate(self, session: Session, **context: Any) -> None:
        """
        Attach metadata (actor, request id, ...) to the AuditLog written
        by the session's current unit of work.
        """
        self._host.annotate(session, **context)

    def pending_mutations(self, session: Session) -> list[PendingMutation]:
        """Return the mutations buffered for a session's current unit of work."""
        return self._host.pending_mutations(session)

    def install(self) -> None:
        """Attach session events to the session factory."""
        self._host.install()

    def uninstall(self) -> None:
        """Detach session events; later commits are not audited."""
        self._host.uninstall()

    @staticmethod
    def create_tables(bind: Any) -> None:
        """Create the history tables if they do not exist."""
        SQLModel.metadata.create_all(
            bind,
            tables=[AuditLog.__table__, Snapshot.__table__],  # type: ignore[list-item]
        )

    # ── Observability ──────────────────────────────────────────────

    def get_metrics(self) -> AuditMetrics:
        """
        Get current metrics snapshot.

        Returns:
            AuditMetrics with aggregate counters.
        """
        return self._metrics.to_audit_metrics()

    def reset_metrics(self) -> None:
        """Reset all counters."""
        self._metrics.reset()

    def __repr__(self) -> str:
        return (
            f"<EntityAuditor types={self._registry.type_names} "
            f"installed={self._host.installed}>"
        )
