"""
Metrics
~~~~~~~

Prometheus-style metrics tracking for entity auditing and rollbacks.
"""

from __future__ import annotations

import threading

from entity_audit.core.mutation import AuditMetrics

__all__ = ["MetricsCollector"]


class MetricsCollector:
    """
    Collects and exposes Prometheus-style metrics.

    Counters are shared by every session the auditor is installed on, so
    all updates go through one re-entrant lock.
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = {
            "units_of_work": 0,
            "snapshots_recorded": 0,
            "serialization_failures": 0,
            "rollbacks": 0,
            "rollback_failures": 0,
            "concurrent_modifications": 0,
        }
        self._rollbacks_by_type: dict[str, int] = {}
        self._lock = threading.RLock()

    def increment(self, name: str, amount: int = 1) -> None:
        """Increment a counter; unknown names are ignored."""
        with self._lock:
            if name in self._counters:
                self._counters[name] += amount

    def record_rollback(self, type_name: str) -> None:
        """Count one successful rollback of the given entity type."""
        with self._lock:
            self._counters["rollbacks"] += 1
            self._rollbacks_by_type[type_name] = (
                self._rollbacks_by_type.get(type_name, 0) + 1
            )

    def get(self, name: str) -> int:
        """Return the current value of a counter."""
        with self._lock:
            return self._counters.get(name, 0)

    def to_audit_metrics(self) -> AuditMetrics:
        """Export as an AuditMetrics dataclass."""
        with self._lock:
            return AuditMetrics(
                units_of_work=self._counters["units_of_work"],
                snapshots_recorded=self._counters["snapshots_recorded"],
                serialization_failures=self._counters["serialization_failures"],
                rollbacks=self._counters["rollbacks"],
                rollback_failures=self._counters["rollback_failures"],
                concurrent_modifications=self._counters["concurrent_modifications"],
                rollbacks_by_type=dict(self._rollbacks_by_type),
            )

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            for key in self._counters:
                self._counters[key] = 0
            self._rollbacks_by_type.clear()
