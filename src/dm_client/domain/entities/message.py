from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from dm_client.domain.value_objects.enums import DELIVERY_RANK, DeliveryState


@dataclass(frozen=True, slots=True)
class Message:
    id: str
    conversation_key: str
    sender_id: str
    text: str
    created_at: datetime
    delivery_state: DeliveryState
    # Locally generated id, kept after the store assigns a canonical one.
    # None for messages that originated on the peer's side.
    client_msg_id: str | None = None

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)

    @property
    def awaiting_echo(self) -> bool:
        """Locally created and not yet bound to a store identifier."""
        return self.client_msg_id is not None and self.id == self.client_msg_id

    def can_transition(self, target: DeliveryState) -> bool:
        if self.delivery_state.is_terminal or target == self.delivery_state:
            return False
        if target == DeliveryState.FAILED:
            return self.delivery_state == DeliveryState.PENDING
        return DELIVERY_RANK[target] > DELIVERY_RANK[self.delivery_state]

    def advance(self, target: DeliveryState) -> Message:
        """Move forward to ``target`` if allowed, otherwise return self unchanged."""
        if not self.can_transition(target):
            return self
        return replace(self, delivery_state=target)
