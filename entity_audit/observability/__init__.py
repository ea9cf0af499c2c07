"""entity-audit observability — in-process metrics."""

from entity_audit.observability.metrics import MetricsCollector

__all__ = ["MetricsCollector"]
