"""Read-only view rows derived from the ordered message list."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable

from dm_client.domain.entities.message import Message
from dm_client.domain.value_objects.enums import DeliveryState

_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)

_TICKS: dict[DeliveryState, int] = {
    DeliveryState.PENDING: 0,
    DeliveryState.FAILED: 0,
    DeliveryState.SENT: 1,
    DeliveryState.DELIVERED: 2,
    DeliveryState.READ: 2,
}


@dataclass(frozen=True, slots=True)
class MessageView:
    id: str
    text: str
    is_sent: bool
    time_label: str
    delivery_state: DeliveryState
    ticks: int
    is_latest: bool = False

    @property
    def failed(self) -> bool:
        return self.delivery_state == DeliveryState.FAILED


def format_relative_time(moment: datetime, now: datetime) -> str:
    """Short age label: ``now``, ``5m``, ``3h``, ``2d``, then ``Mar 4`` / ``Mar 4, 2024``."""
    seconds = (now - moment).total_seconds()
    minutes = int(seconds // 60)
    if minutes < 1:
        return "now"
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    days = hours // 24
    if days < 7:
        return f"{days}d"

    label = f"{_MONTHS[moment.month - 1]} {moment.day}"
    if moment.year != now.year:
        label += f", {moment.year}"
    return label


def project(
    messages: Iterable[Message],
    local_participant_id: str,
    now: datetime,
) -> list[MessageView]:
    rows = [
        MessageView(
            id=m.id,
            text=m.text,
            is_sent=m.sender_id == local_participant_id,
            time_label=format_relative_time(m.created_at, now),
            delivery_state=m.delivery_state,
            # Receipts are only shown on outgoing bubbles.
            ticks=_TICKS[m.delivery_state] if m.sender_id == local_participant_id else 0,
        )
        for m in messages
    ]
    if rows:
        rows[-1] = replace(rows[-1], is_latest=True)
    return rows
