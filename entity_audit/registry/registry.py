"""
Entity Registry
~~~~~~~~~~~~~~~

Maps entity type names to the callables that identify, capture and
restore them. Every other component stays generic over registered types.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from entity_audit.core.mutation import EntityState
from entity_audit.exceptions import UnknownEntityType

__all__ = ["EntityRegistration", "EntityRegistry"]

logger = logging.getLogger(__name__)

IdentifierExtractor = Callable[[Any], str]
Serializer = Callable[[Any], "EntityState | Mapping[str, Any]"]
Deserializer = Callable[[Any, EntityState], None]
Loader = Callable[[Any, str], Any]


@dataclass(frozen=True)
class EntityRegistration:
    """
    Everything the engine needs to know about one auditable type.

    Attributes:
        type_name: Stable name stored with every snapshot.
        identifier_extractor: Returns the entity's identifier as text.
        serializer: Returns the entity's ownable state.
        deserializer: Applies a decoded state onto a live entity.
        entity_class: Class used to recognise instances without the
            ``type_name()`` capability.
        loader: ``loader(session, entity_id)`` host read path.
        soft_delete_attribute: Attribute holding the soft-delete marker.
        version_attribute: Attribute holding the row version.
    """

    type_name: str
    identifier_extractor: IdentifierExtractor
    serializer: Serializer
    deserializer: Deserializer
    entity_class: type | None = None
    loader: Loader | None = None
    soft_delete_attribute: str | None = None
    version_attribute: str | None = None


class EntityRegistry:
    """
    Registry mapping type names to entity registrations.

    Instances are recognised either through the ``type_name()``
    capability or by their class (walking the MRO, so subclasses of a
    registered class are auditable under the parent's name).
    """

    def __init__(self) -> None:
        self._registrations: dict[str, EntityRegistration] = {}
        self._by_class: dict[type, str] = {}

    def register(
        self,
        type_name: str,
        identifier_extractor: IdentifierExtractor,
        serializer: Serializer,
        deserializer: Deserializer,
        *,
        entity_class: type | None = None,
        loader: Loader | None = None,
        soft_delete_attribute: str | None = None,
        version_attribute: str | None = None,
    ) -> EntityRegistration:
        """
        Register an auditable entity type.

        Args:
            type_name: Name stored with the type's snapshots.
            identifier_extractor: Callable(entity) -> str.
            serializer: Callable(entity) -> EntityState or field mapping.
            deserializer: Callable(entity, EntityState) -> None.
            entity_class: Optional class for instance recognition.
            loader: Optional Callable(session, entity_id) -> entity | None.
            soft_delete_attribute: Optional soft-delete marker attribute.
            version_attribute: Optional row-version attribute.

        Returns:
            The stored registration.
        """
        if not type_name:
            raise ValueError("type_name must be a non-empty string")

        registration = EntityRegistration(
            type_name=type_name,
            identifier_extractor=identifier_extractor,
            serializer=serializer,
            deserializer=deserializer,
            entity_class=entity_class,
            loader=loader,
            soft_delete_attribute=soft_delete_attribute,
            version_attribute=version_attribute,
        )
        return self.add(registration)

    def add(self, registration: EntityRegistration) -> EntityRegistration:
        """Store a prebuilt registration, replacing any previous one."""
        previous = self._registrations.get(registration.type_name)
        if previous is not None:
            logger.warning(
                "Replacing registration for entity type %s", registration.type_name
            )
            if previous.entity_class is not None:
                self._by_class.pop(previous.entity_class, None)

        self._registrations[registration.type_name] = registration
        if registration.entity_class is not None:
            self._by_class[registration.entity_class] = registration.type_name

        logger.debug(
            "Registered entity type %s (class=%s)",
            registration.type_name,
            getattr(registration.entity_class, "__name__", None),
        )
        return registration

    def resolve(self, type_name: str) -> EntityRegistration:
        """
        Look up the registration for a type name.

        Raises:
            UnknownEntityType: If the type is not registered.
        """
        try:
            return self._registrations[type_name]
        except KeyError:
            raise UnknownEntityType(type_name) from None

    def unregister(self, type_name: str) -> None:
        """Remove a type; unknown names are ignored."""
        registration = self._registrations.pop(type_name, None)
        if registration is not None and registration.entity_class is not None:
            self._by_class.pop(registration.entity_class, None)

    def is_registered(self, type_name: str) -> bool:
        """Check if a type name has a registration."""
        return type_name in self._registrations

    def type_name_for(self, entity: Any) -> str | None:
        """
        Return the registered type name of an entity, or None.

        The entity's own ``type_name()`` wins over class lookup.
        """
        capability = getattr(entity, "type_name", None)
        if callable(capability):
            name = capability()
            return name if name in self._registrations else None

        for klass in type(entity).__mro__:
            name = self._by_class.get(klass)
            if name is not None:
                return name
        return None

    def is_auditable(self, entity: Any) -> bool:
        """Check if an entity's type is registered."""
        return self.type_name_for(entity) is not None

    def registration_for(self, entity: Any) -> EntityRegistration:
        """
        Return the registration matching an entity instance.

        Raises:
            UnknownEntityType: If the entity's type is not registered.
        """
        name = self.type_name_for(entity)
        if name is None:
            raise UnknownEntityType(type(entity).__name__)
        return self._registrations[name]

    @property
    def type_names(self) -> list[str]:
        """Return all registered type names, sorted."""
        return sorted(self._registrations)

    def clear(self) -> None:
        """Remove all registrations."""
        self._registrations.clear()
        self._by_class.clear()

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._registrations

    def __len__(self) -> int:
        return len(self._registrations)
