"""Flat in-process storage: one shared log, one view per participant."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from dm_client.application.dto.store import StoreMessage
from dm_client.application.exceptions import StoreRejected
from dm_client.application.ports.clock import Clock, MonotonicClock
from dm_client.application.ports.store import OnMessages, OnTyping, Unsubscribe
from dm_client.domain.value_objects.enums import DELIVERY_RANK, DeliveryState

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4000


@dataclass(eq=False)
class _Subscription:
    callback: Callable[..., None]
    active: bool = True


class InMemoryBackend:
    """Process-local message log shared by every participant's store view.

    Subscribers are notified with the full snapshot on the next loop turn,
    like a push channel would.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = MonotonicClock(clock)
        self._logs: dict[str, list[StoreMessage]] = {}
        self._message_subs: dict[str, list[_Subscription]] = {}
        self._typing_subs: dict[str, list[_Subscription]] = {}

    def snapshot(self, conversation_key: str) -> list[StoreMessage]:
        return list(self._logs.get(conversation_key, []))

    def append(self, conversation_key: str, sender_id: str, text: str) -> StoreMessage:
        if not text.strip():
            raise StoreRejected("Message text must not be blank")
        if len(text) > MAX_TEXT_LENGTH:
            raise StoreRejected(f"Message text exceeds {MAX_TEXT_LENGTH} characters")

        msg = StoreMessage(
            id=uuid.uuid4().hex,
            conversation_key=conversation_key,
            sender_id=sender_id,
            text=text,
            created_at=self._clock.now(),
            delivery_state=DeliveryState.SENT,
        )
        self._logs.setdefault(conversation_key, []).append(msg)
        self._broadcast(self._message_subs, conversation_key, self.snapshot(conversation_key))
        return msg

    def advance(self, conversation_key: str, message_id: str, state: DeliveryState) -> None:
        """Move the target's sender's messages up to the target forward to ``state``."""
        log = self._logs.get(conversation_key, [])
        target = next((m for m in log if m.id == message_id), None)
        if target is None:
            raise StoreRejected(f"Unknown message {message_id}")

        changed = False
        for i, m in enumerate(log):
            if (
                m.sender_id == target.sender_id
                and m.created_at <= target.created_at
                and DELIVERY_RANK[m.delivery_state] < DELIVERY_RANK[state]
            ):
                log[i] = m.model_copy(update={"delivery_state": state})
                changed = True
        if changed:
            self._broadcast(self._message_subs, conversation_key, self.snapshot(conversation_key))

    def publish_typing(self, conversation_key: str, participant_id: str, is_typing: bool) -> None:
        self._broadcast(self._typing_subs, conversation_key, participant_id, is_typing)

    def subscribe(self, conversation_key: str, on_update: OnMessages) -> Unsubscribe:
        return self._add(self._message_subs, conversation_key, on_update)

    def subscribe_typing(self, conversation_key: str, on_update: OnTyping) -> Unsubscribe:
        return self._add(self._typing_subs, conversation_key, on_update)

    def _add(
        self,
        registry: dict[str, list[_Subscription]],
        conversation_key: str,
        callback: Callable[..., None],
    ) -> Unsubscribe:
        sub = _Subscription(callback)
        registry.setdefault(conversation_key, []).append(sub)

        def unsubscribe() -> None:
            sub.active = False
            subs = registry.get(conversation_key)
            if subs and sub in subs:
                subs.remove(sub)

        return unsubscribe

    def _broadcast(
        self,
        registry: dict[str, list[_Subscription]],
        conversation_key: str,
        *args: Any,
    ) -> None:
        loop = asyncio.get_running_loop()
        for sub in list(registry.get(conversation_key, [])):
            loop.call_soon(self._deliver, sub, args)

    @staticmethod
    def _deliver(sub: _Subscription, args: tuple[Any, ...]) -> None:
        if not sub.active:
            return
        try:
            sub.callback(*args)
        except Exception:
            logger.exception("In-memory subscriber failed")


class InMemoryMessageStore:
    """MessageStore view of an InMemoryBackend for one participant."""

    def __init__(self, backend: InMemoryBackend, participant_id: str) -> None:
        self._backend = backend
        self.participant_id = participant_id

    async def append(self, conversation_key: str, sender_id: str, text: str) -> StoreMessage:
        if sender_id != self.participant_id:
            raise StoreRejected(f"{self.participant_id} cannot send as {sender_id}")
        return self._backend.append(conversation_key, sender_id, text)

    async def fetch(self, conversation_key: str) -> list[StoreMessage]:
        return self._backend.snapshot(conversation_key)

    def subscribe(self, conversation_key: str, on_update: OnMessages) -> Unsubscribe:
        return self._backend.subscribe(conversation_key, on_update)

    async def mark_delivered(self, conversation_key: str, message_id: str) -> None:
        self._backend.advance(conversation_key, message_id, DeliveryState.DELIVERED)

    async def mark_read(self, conversation_key: str, message_id: str) -> None:
        self._backend.advance(conversation_key, message_id, DeliveryState.READ)

    def subscribe_typing(self, conversation_key: str, on_update: OnTyping) -> Unsubscribe:
        return self._backend.subscribe_typing(conversation_key, on_update)

    async def publish_typing(self, conversation_key: str, is_typing: bool) -> None:
        self._backend.publish_typing(conversation_key, self.participant_id, is_typing)
