"""entity-audit configuration — loading, validation, and defaults."""

from entity_audit.config.defaults import DEFAULT_CONFIG
from entity_audit.config.loader import load_config, load_config_from_dict
from entity_audit.config.schema import AuditConfig, EntityConfig

__all__ = [
    "load_config",
    "load_config_from_dict",
    "AuditConfig",
    "EntityConfig",
    "DEFAULT_CONFIG",
]
