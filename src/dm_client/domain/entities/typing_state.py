from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True, slots=True)
class TypingState:
    participant_id: str
    is_typing: bool
    updated_at: datetime

    def is_active(self, now: datetime, freshness: timedelta) -> bool:
        return self.is_typing and now - self.updated_at <= freshness
