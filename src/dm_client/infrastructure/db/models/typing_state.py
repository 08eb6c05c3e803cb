from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from dm_client.infrastructure.db.base import Base


class TypingStateModel(Base):
    __tablename__ = "typing_states"

    conversation_key: Mapped[str] = mapped_column(String(512), primary_key=True)
    participant_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    is_typing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
