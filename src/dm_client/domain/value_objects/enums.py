from __future__ import annotations

from enum import StrEnum


class DeliveryState(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryState.READ, DeliveryState.FAILED)


class TypingStatus(StrEnum):
    IDLE = "idle"
    TYPING = "typing"


# Forward-only ordering of the non-failure states.
DELIVERY_RANK: dict[DeliveryState, int] = {
    DeliveryState.PENDING: 0,
    DeliveryState.SENT: 1,
    DeliveryState.DELIVERED: 2,
    DeliveryState.READ: 3,
}
