"""Debounced "is typing" presence for one conversation."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import timedelta
from typing import Callable

from dm_client.application.ports.clock import Clock, SystemClock
from dm_client.application.ports.store import MessageStore, Unsubscribe
from dm_client.config import settings
from dm_client.domain.entities.typing_state import TypingState
from dm_client.domain.value_objects.conversation_key import ConversationKey
from dm_client.domain.value_objects.enums import TypingStatus

logger = logging.getLogger(__name__)

TypingListener = Callable[[str, bool], None]


class TypingSignal:
    """IDLE/TYPING state machine for the local user plus the peers' last known state.

    Only the IDLE→TYPING and TYPING→IDLE transitions are published, never
    individual keystrokes. Peer entries that are not refreshed within the
    freshness bound read as idle.
    """

    def __init__(
        self,
        key: ConversationKey,
        local_participant_id: str,
        store: MessageStore,
        *,
        clock: Clock | None = None,
        idle_timeout: float | None = None,
        freshness: float | None = None,
    ) -> None:
        self.key = key
        self.local_participant_id = local_participant_id
        self._store = store
        self._clock = clock or SystemClock()
        self._idle_timeout = (
            settings.TYPING_IDLE_TIMEOUT_SECONDS if idle_timeout is None else idle_timeout
        )
        self._freshness = timedelta(
            seconds=settings.TYPING_FRESHNESS_SECONDS if freshness is None else freshness
        )
        self._state = TypingStatus.IDLE
        self._idle_handle: asyncio.TimerHandle | None = None
        self._peers: dict[str, TypingState] = {}
        self._expiry_handles: dict[str, asyncio.TimerHandle] = {}
        self._listeners: list[TypingListener] = []
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> TypingStatus:
        return self._state

    # -- outbound -------------------------------------------------------------

    def keystroke(self) -> None:
        loop = asyncio.get_running_loop()
        if self._idle_handle is not None:
            self._idle_handle.cancel()
        if self._state == TypingStatus.IDLE:
            self._state = TypingStatus.TYPING
            self._emit(True)
        self._idle_handle = loop.call_later(self._idle_timeout, self._on_idle_timeout)

    def stop(self) -> None:
        """End the TYPING state now, e.g. when the message is sent."""
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None
        if self._state == TypingStatus.TYPING:
            self._state = TypingStatus.IDLE
            self._emit(False)

    def _on_idle_timeout(self) -> None:
        self._idle_handle = None
        if self._state == TypingStatus.TYPING:
            self._state = TypingStatus.IDLE
            self._emit(False)

    def _emit(self, is_typing: bool) -> None:
        logger.debug(
            "%s %s in %s",
            self.local_participant_id, "typing" if is_typing else "idle", self.key.value,
        )
        task = asyncio.get_running_loop().create_task(
            self._publish(is_typing), name=f"dm-typing-{self.key.value}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, is_typing: bool) -> None:
        # Best effort: a lost indicator is corrected by the next transition
        # or by the peer's freshness bound.
        try:
            await self._store.publish_typing(self.key.value, is_typing)
        except Exception:
            logger.debug("Typing publish failed for %s", self.key.value, exc_info=True)

    # -- inbound --------------------------------------------------------------

    def on_remote(self, participant_id: str, is_typing: bool) -> None:
        if participant_id == self.local_participant_id:
            return
        was_typing = self.is_typing(participant_id)
        self._peers[participant_id] = TypingState(
            participant_id=participant_id,
            is_typing=is_typing,
            updated_at=self._clock.now(),
        )

        handle = self._expiry_handles.pop(participant_id, None)
        if handle is not None:
            handle.cancel()
        if is_typing:
            self._expiry_handles[participant_id] = asyncio.get_running_loop().call_later(
                self._freshness.total_seconds(), self._expire, participant_id,
            )

        if is_typing != was_typing:
            self._notify(participant_id, is_typing)

    def _expire(self, participant_id: str) -> None:
        self._expiry_handles.pop(participant_id, None)
        state = self._peers.get(participant_id)
        if state is None or not state.is_typing:
            return
        self._peers[participant_id] = replace(state, is_typing=False)
        logger.debug("Typing state of %s expired", participant_id)
        self._notify(participant_id, False)

    def is_typing(self, participant_id: str) -> bool:
        state = self._peers.get(participant_id)
        return state is not None and state.is_active(self._clock.now(), self._freshness)

    def typing_peers(self) -> list[str]:
        return [pid for pid in self._peers if self.is_typing(pid)]

    # -- listeners ------------------------------------------------------------

    def subscribe(self, listener: TypingListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, participant_id: str, is_typing: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(participant_id, is_typing)
            except Exception:
                logger.exception("Typing listener failed in %s", self.key.value)

    # -- lifecycle ------------------------------------------------------------

    def suspend(self) -> None:
        """Leave the conversation: publish IDLE if needed and forget peer state."""
        self.stop()
        for handle in self._expiry_handles.values():
            handle.cancel()
        self._expiry_handles.clear()
        self._peers.clear()

    def close(self) -> None:
        self.suspend()
        self._listeners.clear()

    async def wait_idle(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
