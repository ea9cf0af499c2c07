"""
Default Configuration
~~~~~~~~~~~~~~~~~~~~~

Defaults for EntityAuditor when no config file is provided.
"""

from __future__ import annotations

__all__ = ["DEFAULT_CONFIG"]

DEFAULT_CONFIG: dict = {
    "version": "1.0",
    "audit": {
        "enabled": True,
        "capture_relations": True,
        "excluded_fields": [],
    },
    "rollback": {
        "restore_relations": True,
        "verify_history_head": True,
    },
    "observability": {
        "metrics_enabled": True,
        "log_payloads": False,
    },
    "entities": [],
}
