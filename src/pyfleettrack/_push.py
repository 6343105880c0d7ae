"""Push channel wire format.

Outbound::

    {"op": "subscribe" | "unsubscribe", "entityId": ..., "entityType": ...}
    {"op": "subscribe_load_status" | "unsubscribe_load_status", "loadId": ...}

Inbound::

    {"event": "position_update", "key": "<entityType>_<entityId>", "payload": {...}}
    {"event": "load_status", "loadId": ..., "status": ..., "details": {...}}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, NamedTuple

import pydantic

from pyfleettrack.exceptions import TrackingValidationError
from pyfleettrack.models.load import LoadStatus
from pyfleettrack.models.position import EntityType, PositionSample

_logger = logging.getLogger(__name__)

OP_SUBSCRIBE = "subscribe"
OP_UNSUBSCRIBE = "unsubscribe"
OP_SUBSCRIBE_LOAD_STATUS = "subscribe_load_status"
OP_UNSUBSCRIBE_LOAD_STATUS = "unsubscribe_load_status"

EVENT_POSITION_UPDATE = "position_update"
EVENT_LOAD_STATUS = "load_status"

# Longest first so "smart_hub_x" resolves to SMART_HUB rather than failing on "smart".
_TYPES_BY_PREFIX = sorted(EntityType, key=lambda t: len(t.value), reverse=True)


class SubscriptionKey(NamedTuple):
    entity_type: EntityType
    entity_id: str

    @property
    def wire(self) -> str:
        return f"{self.entity_type.value}_{self.entity_id}"

    @classmethod
    def from_wire(cls, key: str) -> SubscriptionKey:
        for entity_type in _TYPES_BY_PREFIX:
            prefix = f"{entity_type.value}_"
            if key.lower().startswith(prefix) and len(key) > len(prefix):
                return cls(entity_type, key[len(prefix) :])
        raise ValueError(f"Unrecognised subscription key: {key!r}")


@dataclass(frozen=True)
class PositionUpdateEvent:
    key: SubscriptionKey
    sample: PositionSample


@dataclass(frozen=True)
class LoadStatusEvent:
    load_id: str
    status: LoadStatus | str
    details: dict[str, Any] = field(default_factory=dict)


PushEvent = PositionUpdateEvent | LoadStatusEvent


def subscribe_message(key: SubscriptionKey) -> dict[str, Any]:
    return {"op": OP_SUBSCRIBE, "entityId": key.entity_id, "entityType": key.entity_type.value}


def unsubscribe_message(key: SubscriptionKey) -> dict[str, Any]:
    return {"op": OP_UNSUBSCRIBE, "entityId": key.entity_id, "entityType": key.entity_type.value}


def subscribe_load_status_message(load_id: str) -> dict[str, Any]:
    return {"op": OP_SUBSCRIBE_LOAD_STATUS, "loadId": load_id}


def unsubscribe_load_status_message(load_id: str) -> dict[str, Any]:
    return {"op": OP_UNSUBSCRIBE_LOAD_STATUS, "loadId": load_id}


def parse_push_message(message: Any) -> PushEvent | None:
    """Decode one inbound frame.

    Returns ``None`` for frames of an unknown event family. Malformed
    frames of a known family raise :class:`TrackingValidationError`.
    """
    if not isinstance(message, dict):
        raise TrackingValidationError(f"Push frame is not an object: {type(message).__name__}")

    event = message.get("event")
    if event == EVENT_POSITION_UPDATE:
        raw_key = message.get("key")
        payload = message.get("payload")
        if not isinstance(raw_key, str) or not isinstance(payload, dict):
            raise TrackingValidationError("position_update requires a string key and an object payload", field="key")
        try:
            key = SubscriptionKey.from_wire(raw_key)
        except ValueError as exc:
            raise TrackingValidationError(str(exc), field="key") from exc
        # The key is authoritative for identity; payloads may omit it.
        merged = {**payload, "entityId": key.entity_id, "entityType": key.entity_type.value}
        merged.pop("entity_id", None)
        merged.pop("entity_type", None)
        try:
            sample = PositionSample.model_validate(merged)
        except pydantic.ValidationError as exc:
            raise TrackingValidationError(f"Invalid position payload for {raw_key}: {exc}", field="payload") from exc
        return PositionUpdateEvent(key=key, sample=sample)

    if event == EVENT_LOAD_STATUS:
        load_id = message.get("loadId")
        if not isinstance(load_id, str) or not load_id:
            raise TrackingValidationError("load_status requires a loadId", field="loadId")
        raw_status = message.get("status")
        try:
            status: LoadStatus | str = LoadStatus(raw_status)
        except ValueError:
            status = str(raw_status)
        details = message.get("details")
        return LoadStatusEvent(
            load_id=load_id,
            status=status,
            details=details if isinstance(details, dict) else {},
        )

    _logger.debug("Ignoring push frame with event=%r", event)
    return None
