"""
SQLAlchemy Model Registration
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Builds EntityRegistrations for SQLAlchemy mapped classes by mapper
inspection: column attributes become snapshot fields, one-to-many and
many-to-many relationships become relation identifiers, and the primary
key doubles as identifier and read path.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from typing import Any

from sqlalchemy import Column
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import Mapper, RelationshipDirection, object_session
from sqlalchemy.types import Enum as SAEnum

from entity_audit.core.mutation import EntityState
from entity_audit.exceptions import RegistrationError, SerializationFailure
from entity_audit.registry.registry import EntityRegistration

__all__ = ["model_registration", "identity_text", "parse_identity"]

logger = logging.getLogger(__name__)

_IDENTITY_SEPARATOR = ":"


def identity_text(entity: Any) -> str:
    """
    Return an entity's identifier as text.

    Uses the ``identifier()`` capability when present, otherwise the
    mapped primary key (composite keys joined with ``:``).
    """
    capability = getattr(entity, "identifier", None)
    if callable(capability):
        return str(capability())

    mapper = sa_inspect(entity).mapper
    values = mapper.primary_key_from_instance(entity)
    if any(value is None for value in values):
        raise SerializationFailure(
            "Entity has no primary key yet",
            type_name=type(entity).__name__,
            field_path=",".join(c.key for c in mapper.primary_key),
            value_type="NoneType",
            what_happened="The entity was captured before its primary key was assigned.",
            how_to_fix="Flush the session before the entity is audited.",
        )
    return _IDENTITY_SEPARATOR.join(str(value) for value in values)


def _coerce_key_part(column: Any, text: str) -> Any:
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return text
    if python_type is int:
        return int(text)
    if python_type is uuid.UUID:
        return uuid.UUID(text)
    return text


def parse_identity(mapper: Mapper, entity_id: str) -> Any:
    """Convert identifier text back into a value accepted by ``Session.get``."""
    columns = list(mapper.primary_key)
    if len(columns) == 1:
        return _coerce_key_part(columns[0], entity_id)

    parts = entity_id.split(_IDENTITY_SEPARATOR)
    if len(parts) != len(columns):
        raise ValueError(
            f"Identifier {entity_id!r} does not match the "
            f"{len(columns)}-column key of {mapper.class_.__name__}"
        )
    return tuple(_coerce_key_part(col, part) for col, part in zip(columns, parts))


def _value_coercer(column: Any) -> Callable[[Any], Any] | None:
    """Return a callable restoring enum members from their stored values."""
    if isinstance(column.type, SAEnum) and column.type.enum_class is not None:
        enum_class = column.type.enum_class

        def coerce(value: Any) -> Any:
            if value is None or isinstance(value, enum_class):
                return value
            return enum_class(value)

        return coerce
    return None


def _load_related(session: Any, mapper: Mapper, entity_id: str) -> Any:
    related = session.get(mapper.class_, parse_identity(mapper, entity_id))
    if related is None:
        logger.warning(
            "Related %s %s no longer exists; reference skipped",
            mapper.class_.__name__,
            entity_id,
        )
    return related


def model_registration(
    model: type,
    *,
    type_name: str | None = None,
    exclude: Iterable[str] = (),
    capture_relations: bool = True,
    soft_delete_attribute: str | None = None,
) -> EntityRegistration:
    """
    Derive a registration from a SQLAlchemy mapped class.

    Args:
        model: The mapped class.
        type_name: Name to store with snapshots (default: class name).
        exclude: Attribute names never captured nor restored.
        capture_relations: Record identifiers of owned relationships.
        soft_delete_attribute: Attribute holding the soft-delete marker.

    Returns:
        An EntityRegistration ready for ``EntityRegistry.add``.

    Raises:
        RegistrationError: If the class is not mapped or the soft-delete
            attribute does not exist.
    """
    try:
        mapper = sa_inspect(model)
    except NoInspectionAvailable as exc:
        raise RegistrationError(f"{model!r} is not a mapped SQLAlchemy class") from exc
    if not isinstance(mapper, Mapper):
        raise RegistrationError(f"{model!r} is not a mapped SQLAlchemy class")

    if soft_delete_attribute and not mapper.has_property(soft_delete_attribute):
        raise RegistrationError(
            f"{model.__name__} has no attribute {soft_delete_attribute!r}"
        )

    excluded = set(exclude)
    pk_keys = {mapper.get_property_by_column(col).key for col in mapper.primary_key}
    version_key = (
        mapper.get_property_by_column(mapper.version_id_col).key
        if mapper.version_id_col is not None
        else None
    )

    field_keys: list[str] = []
    coercers: dict[str, Callable[[Any], Any]] = {}
    for prop in mapper.column_attrs:
        if prop.key in excluded or prop.key == version_key:
            continue
        # Skip SQL-expression column_property()s; they are read-only.
        if not all(isinstance(col, Column) for col in prop.columns):
            continue
        field_keys.append(prop.key)
        coercer = _value_coercer(prop.columns[0])
        if coercer is not None:
            coercers[prop.key] = coercer

    relationships = {}
    if capture_relations:
        for rel in mapper.relationships:
            if rel.key in excluded or rel.viewonly:
                continue
            # Many-to-one links are already captured through FK columns.
            if rel.direction is RelationshipDirection.MANYTOONE:
                continue
            relationships[rel.key] = rel

    def serializer(entity: Any) -> EntityState:
        fields = {key: getattr(entity, key) for key in field_keys}
        relations: dict[str, Any] = {}
        for key, rel in relationships.items():
            value = getattr(entity, key)
            if rel.uselist:
                items = value.values() if isinstance(value, dict) else value
                relations[key] = sorted(identity_text(item) for item in items)
            else:
                relations[key] = identity_text(value) if value is not None else None
        return EntityState(fields=fields, relations=relations)

    def deserializer(entity: Any, state: EntityState) -> None:
        for key, value in state.fields.items():
            if key in pk_keys or key not in field_keys:
                continue
            coerce = coercers.get(key)
            setattr(entity, key, coerce(value) if coerce else value)

        if not state.relations:
            return
        session = object_session(entity)
        if session is None:
            logger.warning(
                "%s is detached; relation references not restored",
                type(entity).__name__,
            )
            return
        for key, value in state.relations.items():
            rel = relationships.get(key)
            if rel is None:
                continue
            if rel.uselist:
                if rel.collection_class not in (None, list, set):
                    logger.warning("Keyed collection %s not restored", key)
                    continue
                loaded = [_load_related(session, rel.mapper, ident) for ident in value or []]
                items = [item for item in loaded if item is not None]
                setattr(entity, key, set(items) if rel.collection_class is set else items)
            else:
                related = _load_related(session, rel.mapper, value) if value else None
                setattr(entity, key, related)

    def loader(session: Any, entity_id: str) -> Any:
        return session.get(model, parse_identity(mapper, entity_id))

    return EntityRegistration(
        type_name=type_name or model.__name__,
        identifier_extractor=identity_text,
        serializer=serializer,
        deserializer=deserializer,
        entity_class=model,
        loader=loader,
        soft_delete_attribute=soft_delete_attribute,
        version_attribute=version_key,
    )
