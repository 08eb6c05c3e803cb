"""Wire models exchanged with MessageStore backends."""
from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, field_validator

from dm_client.domain.value_objects.enums import DeliveryState


class StoreMessage(BaseModel):
    """A message as the backing log knows it."""

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_key: str
    sender_id: str
    text: str
    created_at: datetime
    delivery_state: DeliveryState = DeliveryState.SENT

    @field_validator("created_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        # SQLite and some JSON producers drop the offset.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class TypingEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    participant_id: str
    is_typing: bool
