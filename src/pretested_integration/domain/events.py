"""Integration event definitions and serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from pretested_integration.domain import ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class EventType(StrEnum):
    """Lifecycle events emitted while integrating one change."""

    CHANGE_DETECTED = "ChangeDetected"
    CHANGE_SKIPPED = "ChangeSkipped"
    REVISION_WILL_MERGE = "RevisionWillMerge"

    WORKSPACE_PREPARED = "WorkspacePrepared"
    MERGE_CONFLICT = "MergeConflict"

    INTEGRATION_PUSHED = "IntegrationPushed"
    INTEGRATION_ADVANCE_CONFLICT = "IntegrationAdvanceConflict"

    WORKSPACE_ROLLED_BACK = "WorkspaceRolledBack"

    INVOCATION_STATE_CHANGED = "InvocationStateChanged"


@dataclass(frozen=True, slots=True)
class IntegrationEvent:
    """Serializable event envelope."""

    event_type: EventType
    payload: dict[str, JSONValue] = field(default_factory=dict)
    event_id: str = field(default_factory=ids.generate_event_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        object.__setattr__(self, "event_type", EventType(self.event_type))
        if self.timestamp.tzinfo is None or self.timestamp.utcoffset() is None:
            raise ValueError("IntegrationEvent.timestamp must be timezone-aware")
        object.__setattr__(self, "timestamp", self.timestamp.astimezone(UTC))
        object.__setattr__(self, "payload", _as_json_object(self.payload))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "payload": dict(self.payload),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _as_json_object(value: Mapping[str, object]) -> dict[str, JSONValue]:
    if not isinstance(value, Mapping):
        raise ValueError(f"event payload must be a mapping, got {type(value).__name__}")
    return {str(key): _as_json_value(item) for key, item in value.items()}


def _as_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("event payload floats must be finite")
        return value
    if isinstance(value, Mapping):
        return _as_json_object(value)
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item) for item in value]
    return str(value)


__all__ = [
    "EventType",
    "IntegrationEvent",
    "JSONScalar",
    "JSONValue",
]
