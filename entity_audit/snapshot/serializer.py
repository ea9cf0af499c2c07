"""
Snapshot Serializer
~~~~~~~~~~~~~~~~~~~

Turns an entity's ownable state into a canonical, restorable JSON
payload and back. Payloads have the shape::

    {"fields": {...}, "relations": {...}}

with keys sorted at every level. Values JSON cannot represent exactly
are written as tagged objects (``{"__type__": "datetime", "value": ...}``)
so that decoding yields the original Python type.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from entity_audit.core.mutation import EntityState
from entity_audit.exceptions import SerializationFailure
from entity_audit.registry.registry import EntityRegistration

__all__ = ["SnapshotSerializer", "TYPE_TAG"]

logger = logging.getLogger(__name__)

TYPE_TAG = "__type__"

_BINARY_TYPES = (bytes, bytearray, memoryview)


class _Unrepresentable(Exception):
    """Internal signal carrying the offending path and value type."""

    def __init__(self, path: str, value: Any, reason: str = "") -> None:
        self.path = path
        self.value_type = type(value).__name__
        self.reason = reason
        super().__init__(path)


def _tagged(kind: str, value: Any) -> dict[str, Any]:
    return {TYPE_TAG: kind, "value": value}


def _encode(value: Any, path: str) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, Enum):
        return _encode(value.value, path)
    if isinstance(value, str):
        return str(value)
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise _Unrepresentable(path, value, "non-finite float")
        return value
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return _tagged("datetime", value.isoformat(timespec="microseconds"))
    if isinstance(value, date):
        return _tagged("date", value.isoformat())
    if isinstance(value, time):
        return _tagged("time", value.isoformat(timespec="microseconds"))
    if isinstance(value, timedelta):
        return _tagged("timedelta", value // timedelta(microseconds=1))
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise _Unrepresentable(path, value, "non-finite decimal")
        return _tagged("decimal", str(value))
    if isinstance(value, UUID):
        return _tagged("uuid", str(value))
    if isinstance(value, _BINARY_TYPES):
        raise _Unrepresentable(path, value, "binary data")
    if isinstance(value, Mapping):
        encoded: dict[str, Any] = {}
        for key in sorted(value, key=lambda k: (not isinstance(k, str), str(k))):
            if not isinstance(key, str):
                raise _Unrepresentable(f"{path}.{key}", key, "non-string mapping key")
            if key == TYPE_TAG:
                raise _Unrepresentable(f"{path}.{key}", key, "reserved key")
            encoded[key] = _encode(value[key], f"{path}.{key}")
        return encoded
    if isinstance(value, (list, tuple)):
        return [_encode(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, (set, frozenset)):
        items = [_encode(item, f"{path}[]") for item in value]
        return sorted(items, key=_canonical_text)
    raise _Unrepresentable(path, value)


def _decode(value: Any) -> Any:
    if isinstance(value, list):
        return [_decode(item) for item in value]
    if not isinstance(value, dict):
        return value

    kind = value.get(TYPE_TAG)
    if kind is None:
        return {key: _decode(item) for key, item in value.items()}

    raw = value["value"]
    if kind == "datetime":
        return datetime.fromisoformat(raw)
    if kind == "date":
        return date.fromisoformat(raw)
    if kind == "time":
        return time.fromisoformat(raw)
    if kind == "timedelta":
        return timedelta(microseconds=raw)
    if kind == "decimal":
        return Decimal(raw)
    if kind == "uuid":
        return UUID(raw)
    raise ValueError(f"Unknown payload type tag: {kind!r}")


def _canonical_text(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class SnapshotSerializer:
    """
    Canonical encoder/decoder for snapshot payloads.

    Captures one level of ownership: scalar fields plus the identifiers
    a registration reports for relations. Nested entities are never
    traversed, so back-references cannot cause cycles.
    """

    def __init__(
        self,
        excluded_fields: Iterable[str] = (),
        capture_relations: bool = True,
    ) -> None:
        self._excluded = frozenset(excluded_fields)
        self._capture_relations = capture_relations

    def serialize(
        self,
        entity: Any,
        registration: EntityRegistration,
        entity_id: str = "",
    ) -> dict[str, Any]:
        """
        Capture an entity's current state as a canonical payload.

        Args:
            entity: The entity instance.
            registration: Its registry entry.
            entity_id: Identifier used in error messages.

        Returns:
            Payload dict with sorted ``fields`` and ``relations``.

        Raises:
            SerializationFailure: If any value is not representable.
        """
        raw = registration.serializer(entity)
        state = raw if isinstance(raw, EntityState) else EntityState(fields=dict(raw))
        return self.encode_state(state, registration.type_name, entity_id)

    def encode_state(
        self,
        state: EntityState,
        type_name: str = "",
        entity_id: str = "",
    ) -> dict[str, Any]:
        """Encode an EntityState without consulting a registration."""
        try:
            fields = {
                key: _encode(state.fields[key], key)
                for key in sorted(state.fields)
                if key not in self._excluded
            }
            relations = {}
            if self._capture_relations:
                relations = {
                    key: _encode(state.relations[key], key)
                    for key in sorted(state.relations)
                    if key not in self._excluded
                }
        except _Unrepresentable as exc:
            logger.debug(
                "Cannot serialize %s:%s field %s (%s)",
                type_name,
                entity_id,
                exc.path,
                exc.value_type,
            )
            raise SerializationFailure(
                f"Cannot serialize {type_name or 'entity'} field {exc.path!r}"
                + (f" ({exc.reason})" if exc.reason else ""),
                type_name=type_name,
                entity_id=entity_id,
                field_path=exc.path,
                value_type=exc.value_type,
            ) from None

        return {"fields": fields, "relations": relations}

    def decode(self, payload: Mapping[str, Any]) -> EntityState:
        """Restore Python values from a stored payload."""
        return EntityState(
            fields=_decode(dict(payload.get("fields") or {})),
            relations=_decode(dict(payload.get("relations") or {})),
        )

    @staticmethod
    def dumps(payload: Mapping[str, Any]) -> str:
        """Render a payload as canonical JSON text."""
        return _canonical_text(payload)
