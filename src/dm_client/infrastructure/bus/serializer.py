"""JSON envelope for conversation events: ``{"event": <type>, "data": {...}}``."""
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

MESSAGE_CREATED = "message.created"
MESSAGES_UPDATED = "messages.updated"
TYPING = "typing"

EVENT_TYPES = frozenset({MESSAGE_CREATED, MESSAGES_UPDATED, TYPING})


class _Encoder(json.JSONEncoder):
    def default(self, o: object) -> Any:
        if isinstance(o, BaseModel):
            return o.model_dump(mode="json")
        if isinstance(o, datetime):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


def serialize_event(event_type: str, payload: dict[str, Any] | BaseModel) -> str:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type {event_type!r}")
    return json.dumps({"event": event_type, "data": payload}, cls=_Encoder)


def deserialize_event(raw: str | bytes) -> tuple[str, dict[str, Any]]:
    envelope = json.loads(raw)
    event_type = envelope.get("event")
    data = envelope.get("data")
    if event_type not in EVENT_TYPES or not isinstance(data, dict):
        raise ValueError(f"Malformed event envelope: {envelope!r}")
    return event_type, data
