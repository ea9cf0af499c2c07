"""
Entity Audit Custom Exceptions
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

All custom exception classes for entity-audit, organized by domain.
Every distinct failure mode has its own exception type.

**Structured Error Messages**

Errors a caller is expected to act on provide three structured fields:
- ``what_happened``: Clear plain-English description
- ``entity``: The ``TypeName:identifier`` the error concerns
- ``how_to_fix``: Concrete, actionable steps
"""

__all__ = [
    # Base
    "EntityAuditError",
    # Config
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigValidationError",
    # Registry
    "RegistrationError",
    "UnknownEntityType",
    # Snapshots
    "SerializationFailure",
    "StorageFailure",
    # Rollback
    "RollbackError",
    "SnapshotNotFound",
    "SnapshotApplyFailure",
    "EntityNotFound",
    "ConcurrentModification",
]


# ── Formatting Helper ────────────────────────────────────────────────────────

_SEPARATOR = "─" * 52


def _format_structured_error(
    title: str,
    what_happened: str,
    entity: str,
    how_to_fix: str,
) -> str:
    """Build a rich, structured error message."""
    lines = [
        f"  {title}",
        f"  {_SEPARATOR}",
        "  What happened:",
        *[f"    {line}" for line in what_happened.strip().splitlines()],
        "",
        "  Entity:",
        f"    {entity}",
        "",
        "  How to fix:",
        *[f"    {line}" for line in how_to_fix.strip().splitlines()],
    ]
    return "\n".join(lines)


# ── Base Exception ───────────────────────────────────────────────────────────


class EntityAuditError(Exception):
    """Base exception for all entity-audit errors."""

    def __init__(self, message: str = "", details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Config Exceptions ────────────────────────────────────────────────────────


class ConfigError(EntityAuditError):
    """Base exception for configuration-related errors."""


class ConfigFileNotFoundError(ConfigError):
    """Raised when a configuration file cannot be found at the specified path."""


class ConfigValidationError(ConfigError):
    """Raised when configuration values fail validation."""


# ── Registry Exceptions ──────────────────────────────────────────────────────


class RegistrationError(EntityAuditError):
    """Raised when an entity type cannot be registered as given."""


class UnknownEntityType(EntityAuditError):
    """Raised when a type name has no entry in the EntityRegistry."""

    def __init__(self, type_name: str, details: dict | None = None) -> None:
        self.type_name = type_name
        super().__init__(f"Entity type is not registered: {type_name!r}", details)


# ── Snapshot Exceptions ──────────────────────────────────────────────────────


class SerializationFailure(EntityAuditError):
    """
    Raised when an entity holds a value that cannot be captured canonically.

    Always aborts the enclosing unit of work: an entity is never committed
    with a partial snapshot.

    Structured fields:
    - ``what_happened``: which field held which kind of value
    - ``entity``: the entity being captured
    - ``how_to_fix``: actionable remediation steps
    """

    def __init__(
        self,
        message: str = "Entity state cannot be serialized",
        type_name: str = "",
        entity_id: str = "",
        field_path: str = "",
        value_type: str = "",
        details: dict | None = None,
        what_happened: str = "",
        how_to_fix: str = "",
    ) -> None:
        self.type_name = type_name
        self.entity_id = entity_id
        self.field_path = field_path
        self.value_type = value_type
        self.what_happened = what_happened or (
            f'Field "{field_path}" holds a value of type {value_type} '
            f"that has no canonical snapshot representation."
        )
        self.how_to_fix = how_to_fix or (
            f'1. Exclude "{field_path.split(".")[0]}" when registering {type_name or "the type"}:\n'
            f'   auditor.register_model(Model, exclude=["{field_path.split(".")[0]}"])\n'
            f"2. Or register a custom serializer that converts the value to text"
        )
        super().__init__(message, details)

    def __str__(self) -> str:
        return _format_structured_error(
            title=f"SerializationFailure: {self.args[0]}",
            what_happened=self.what_happened,
            entity=f"{self.type_name or '?'}:{self.entity_id or '?'}",
            how_to_fix=self.how_to_fix,
        )


class StorageFailure(EntityAuditError):
    """Raised when the storage backend fails while reading or writing history."""


# ── Rollback Exceptions ──────────────────────────────────────────────────────


class RollbackError(EntityAuditError):
    """Base exception for rollback errors."""


class SnapshotNotFound(RollbackError):
    """Raised when a snapshot cannot be found for the requested entity."""


class SnapshotApplyFailure(RollbackError):
    """
    Raised when a stored payload cannot be decoded or applied to the entity.

    The original error is chained as ``__cause__``, e.g. an unknown type
    tag or a value the mapped column no longer accepts.
    """

    def __init__(
        self,
        message: str,
        type_name: str = "",
        entity_id: str = "",
        snapshot_id: object = None,
        details: dict | None = None,
    ) -> None:
        self.type_name = type_name
        self.entity_id = entity_id
        self.snapshot_id = snapshot_id
        super().__init__(message, details)


class EntityNotFound(RollbackError):
    """Raised when the live entity to roll back no longer exists."""

    def __init__(
        self,
        type_name: str,
        entity_id: str,
        details: dict | None = None,
    ) -> None:
        self.type_name = type_name
        self.entity_id = entity_id
        super().__init__(f"Entity not found: {type_name}:{entity_id}", details)


class ConcurrentModification(RollbackError):
    """
    Raised when the entity changed between reading and writing a rollback.

    Structured fields:
    - ``what_happened``: which check detected the concurrent write
    - ``entity``: the entity being rolled back
    - ``how_to_fix``: how to retry safely
    """

    def __init__(
        self,
        message: str = "Entity was modified concurrently",
        type_name: str = "",
        entity_id: str = "",
        expected: object = None,
        actual: object = None,
        details: dict | None = None,
        what_happened: str = "",
        how_to_fix: str = "",
    ) -> None:
        self.type_name = type_name
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        self.what_happened = what_happened or (
            f"Expected {expected!r} but found {actual!r}; a newer state "
            f"was committed while the rollback was in progress."
        )
        self.how_to_fix = how_to_fix or (
            "1. Re-read the entity history with auditor.history(...)\n"
            "2. Decide whether the rollback target is still correct\n"
            "3. Retry the rollback with the current version"
        )
        super().__init__(message, details)

    def __str__(self) -> str:
        return _format_structured_error(
            title=f"ConcurrentModification: {self.args[0]}",
            what_happened=self.what_happened,
            entity=f"{self.type_name or '?'}:{self.entity_id or '?'}",
            how_to_fix=self.how_to_fix,
        )
