"""
Configuration Schema
~~~~~~~~~~~~~~~~~~~~

Pydantic models for validating entity-audit configuration.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "AuditConfig",
    "AuditSection",
    "RollbackSection",
    "ObservabilitySection",
    "EntityConfig",
]


class AuditSection(BaseModel):
    """Snapshot capture settings."""

    enabled: bool = True
    capture_relations: bool = True
    excluded_fields: list[str] = Field(default_factory=list)


class RollbackSection(BaseModel):
    """Rollback behaviour."""

    restore_relations: bool = True
    verify_history_head: bool = True


class ObservabilitySection(BaseModel):
    """Metrics and logging settings."""

    metrics_enabled: bool = True
    log_payloads: bool = False


class EntityConfig(BaseModel):
    """A mapped model registered at startup."""

    model: str
    type_name: str | None = None
    exclude: list[str] = Field(default_factory=list)
    soft_delete_attribute: str | None = None

    @field_validator("model")
    @classmethod
    def validate_model_path(cls, v: str) -> str:
        """Require the ``package.module:ClassName`` form."""
        module, sep, attr = v.partition(":")
        if not sep or not module or not attr:
            raise ValueError(f"Model path must look like 'package.module:Class': {v!r}")
        return v


class AuditConfig(BaseModel):
    """
    Root configuration model for EntityAuditor.

    Validated on load with clear error messages for invalid values.
    """

    version: str = "1.0"
    audit: AuditSection = Field(default_factory=AuditSection)
    rollback: RollbackSection = Field(default_factory=RollbackSection)
    observability: ObservabilitySection = Field(default_factory=ObservabilitySection)
    entities: list[EntityConfig] = Field(default_factory=list)

    @field_validator("entities")
    @classmethod
    def validate_unique_type_names(cls, v: list[EntityConfig]) -> list[EntityConfig]:
        """Reject two entries that would register the same type name."""
        seen: set[str] = set()
        for entry in v:
            name = entry.type_name or entry.model.partition(":")[2]
            if name in seen:
                raise ValueError(f"Duplicate entity type name: {name!r}")
            seen.add(name)
        return v
