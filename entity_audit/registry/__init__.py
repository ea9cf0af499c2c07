"""Entity registry — type names mapped to identify/capture/restore logic."""

from entity_audit.registry.registry import EntityRegistration, EntityRegistry
from entity_audit.registry.sqlalchemy_models import (
    identity_text,
    model_registration,
    parse_identity,
)

__all__ = [
    "EntityRegistry",
    "EntityRegistration",
    "model_registration",
    "identity_text",
    "parse_identity",
]
