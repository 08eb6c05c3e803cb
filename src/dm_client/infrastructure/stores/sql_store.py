"""SQL-backed store whose subscriptions poll the database."""
from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, Callable, Generic, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dm_client.application.dto.store import StoreMessage
from dm_client.application.exceptions import StoreError, StoreRejected, StoreUnavailable
from dm_client.application.ports.clock import Clock, MonotonicClock, SystemClock
from dm_client.application.ports.store import OnMessages, OnTyping, Unsubscribe
from dm_client.config import settings
from dm_client.domain.value_objects.enums import DELIVERY_RANK, DeliveryState
from dm_client.infrastructure.db.mappers import message as mapper
from dm_client.infrastructure.db.models.message import DirectMessageModel
from dm_client.infrastructure.db.models.typing_state import TypingStateModel

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Poller(Generic[T]):
    """Periodically runs ``fetch`` and hands changed results to ``on_change``."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[T]],
        on_change: Callable[[T], None],
        *,
        interval: float,
        name: str,
    ) -> None:
        self._fetch = fetch
        self._on_change = on_change
        self._interval = interval
        self._name = name
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self._name)
        logger.info("Poller %s started (interval=%.2fs)", self._name, self._interval)

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Poller %s stopped", self._name)

    async def _run(self) -> None:
        last: T | None = None
        first = True
        while True:
            try:
                result = await self._fetch()
                if first or result != last:
                    first = False
                    last = result
                    self._on_change(result)
            except StoreError as exc:
                logger.warning("Poller %s: %s", self._name, exc.detail)
            except Exception:
                logger.exception("Poller %s loop error", self._name)
            await asyncio.sleep(self._interval)


class SqlPollingMessageStore:
    """MessageStore over SQLAlchemy for one participant."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        participant_id: str,
        *,
        poll_interval: float | None = None,
        typing_freshness: float | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.participant_id = participant_id
        self._poll_interval = (
            settings.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self._typing_freshness = timedelta(
            seconds=settings.TYPING_FRESHNESS_SECONDS
            if typing_freshness is None
            else typing_freshness
        )
        self._clock = clock or SystemClock()
        self._stamps = MonotonicClock(self._clock)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable(str(exc.orig or exc)) from exc
        except DBAPIError as exc:
            raise StoreRejected(str(exc.orig or exc)) from exc

    async def append(self, conversation_key: str, sender_id: str, text: str) -> StoreMessage:
        if sender_id != self.participant_id:
            raise StoreRejected(f"{self.participant_id} cannot send as {sender_id}")
        msg = StoreMessage(
            id=uuid.uuid4().hex,
            conversation_key=conversation_key,
            sender_id=sender_id,
            text=text,
            created_at=self._stamps.now(),
            delivery_state=DeliveryState.SENT,
        )
        async with self._session() as session:
            session.add(mapper.dto_to_model(msg))
            await session.commit()
        return msg

    async def fetch(self, conversation_key: str) -> list[StoreMessage]:
        stmt = (
            select(DirectMessageModel)
            .where(DirectMessageModel.conversation_key == conversation_key)
            .order_by(DirectMessageModel.created_at.asc(), DirectMessageModel.id.asc())
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return [mapper.model_to_dto(m) for m in result.scalars().all()]

    async def mark_delivered(self, conversation_key: str, message_id: str) -> None:
        await self._advance(conversation_key, message_id, DeliveryState.DELIVERED)

    async def mark_read(self, conversation_key: str, message_id: str) -> None:
        await self._advance(conversation_key, message_id, DeliveryState.READ)

    async def _advance(self, conversation_key: str, message_id: str, state: DeliveryState) -> None:
        lower = [s.value for s, rank in DELIVERY_RANK.items() if rank < DELIVERY_RANK[state]]
        async with self._session() as session:
            target = await session.get(DirectMessageModel, message_id)
            if target is None or target.conversation_key != conversation_key:
                raise StoreRejected(f"Unknown message {message_id}")
            stmt = (
                update(DirectMessageModel)
                .where(
                    DirectMessageModel.conversation_key == conversation_key,
                    DirectMessageModel.sender_id == target.sender_id,
                    DirectMessageModel.created_at <= target.created_at,
                    DirectMessageModel.delivery_state.in_(lower),
                )
                .values(delivery_state=state.value)
            )
            await session.execute(stmt)
            await session.commit()

    def subscribe(self, conversation_key: str, on_update: OnMessages) -> Unsubscribe:
        poller: Poller[list[StoreMessage]] = Poller(
            lambda: self.fetch(conversation_key),
            on_update,
            interval=self._poll_interval,
            name=f"dm-poll-{conversation_key}",
        )
        poller.start()
        return poller.stop

    async def fetch_typing(self, conversation_key: str) -> dict[str, bool]:
        """Current typing flags per participant; stale rows read as not typing."""
        stmt = select(TypingStateModel).where(
            TypingStateModel.conversation_key == conversation_key,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        now = self._clock.now()
        states: dict[str, bool] = {}
        for row in rows:
            fresh = now - _as_utc(row.updated_at) <= self._typing_freshness
            states[row.participant_id] = row.is_typing and fresh
        return states

    def subscribe_typing(self, conversation_key: str, on_update: OnTyping) -> Unsubscribe:
        last: dict[str, bool] = {}

        def _on_change(states: dict[str, bool]) -> None:
            for participant_id, is_typing in states.items():
                if last.get(participant_id, False) != is_typing:
                    on_update(participant_id, is_typing)
            last.clear()
            last.update(states)

        poller: Poller[dict[str, bool]] = Poller(
            lambda: self.fetch_typing(conversation_key),
            _on_change,
            interval=self._poll_interval,
            name=f"dm-poll-typing-{conversation_key}",
        )
        poller.start()
        return poller.stop

    async def publish_typing(self, conversation_key: str, is_typing: bool) -> None:
        async with self._session() as session:
            await session.merge(
                TypingStateModel(
                    conversation_key=conversation_key,
                    participant_id=self.participant_id,
                    is_typing=is_typing,
                    updated_at=self._clock.now(),
                )
            )
            await session.commit()


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
