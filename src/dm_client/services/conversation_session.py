"""Binds the local participant to exactly one active conversation."""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

from dm_client.application.exceptions import SessionNotReadyError, StoreError
from dm_client.application.ports.clock import Clock, SystemClock
from dm_client.application.ports.store import MessageStore, Unsubscribe
from dm_client.config import settings
from dm_client.domain.entities.message import Message
from dm_client.domain.value_objects.conversation_key import ConversationKey, derive_key
from dm_client.services.sync_engine import SyncEngine
from dm_client.services.typing_signal import TypingSignal

logger = logging.getLogger(__name__)

SessionMessagesListener = Callable[[ConversationKey, tuple[Message, ...]], None]
SessionTypingListener = Callable[[ConversationKey, str, bool], None]
ReadyListener = Callable[[ConversationKey], None]


@dataclass(slots=True, eq=False)
class _Binding:
    key: ConversationKey
    engine: SyncEngine
    typing: TypingSignal
    detach: list[Unsubscribe] = field(default_factory=list)
    ready: bool = False


class ConversationSession:
    """Switches the active chat partner and projects only the active conversation.

    Engines are kept in a bounded LRU cache so that switching back restores the
    previous list at once. Updates from any binding other than the active one
    never reach the registered listeners.
    """

    def __init__(
        self,
        local_participant_id: str,
        store: MessageStore,
        *,
        clock: Clock | None = None,
        cache_size: int | None = None,
        reconciliation_window: float | None = None,
        send_timeout: float | None = None,
        typing_idle_timeout: float | None = None,
        typing_freshness: float | None = None,
    ) -> None:
        self.local_participant_id = local_participant_id
        self._store = store
        self._clock = clock or SystemClock()
        self._cache_size = max(1, settings.SESSION_CACHE_SIZE if cache_size is None else cache_size)
        self._reconciliation_window = reconciliation_window
        self._send_timeout = send_timeout
        self._typing_idle_timeout = typing_idle_timeout
        self._typing_freshness = typing_freshness

        self._bindings: OrderedDict[ConversationKey, _Binding] = OrderedDict()
        self._active: _Binding | None = None
        self._message_listeners: list[SessionMessagesListener] = []
        self._typing_listeners: list[SessionTypingListener] = []
        self._ready_listeners: list[ReadyListener] = []

    # -- state ----------------------------------------------------------------

    @property
    def active_key(self) -> ConversationKey | None:
        return self._active.key if self._active else None

    @property
    def peer_id(self) -> str | None:
        if self._active is None:
            return None
        return self._active.key.peer_of(self.local_participant_id)

    @property
    def is_ready(self) -> bool:
        return self._active is not None and self._active.ready

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._require_active().engine.messages

    @property
    def peer_is_typing(self) -> bool:
        binding = self._require_active()
        return binding.typing.is_typing(binding.key.peer_of(self.local_participant_id))

    def cached_keys(self) -> list[ConversationKey]:
        return list(self._bindings)

    # -- switching ------------------------------------------------------------

    async def switch_to(self, peer_id: str) -> ConversationKey:
        """Make the conversation with ``peer_id`` active and load it.

        Returns once the initial snapshot is merged. A later switch that starts
        while this one is loading takes precedence; this call then returns
        without signalling ready.
        """
        key = derive_key(self.local_participant_id, peer_id)
        if self._active is not None and self._active.key == key:
            return key

        if self._active is not None:
            self._detach(self._active)

        binding = self._bindings.pop(key, None) or self._create_binding(key)
        self._bindings[key] = binding
        self._evict()

        self._active = binding
        self._attach(binding)
        logger.info("%s switched to %s", self.local_participant_id, key.value)

        try:
            snapshot = await self._store.fetch(key.value)
        except StoreError as exc:
            logger.warning("Initial load of %s failed: %s", key.value, exc.detail)
            snapshot = []
        binding.engine.apply_remote_snapshot(snapshot)

        if self._active is not binding:
            logger.debug("Switch to %s superseded before it was ready", key.value)
            return key

        binding.ready = True
        for listener in list(self._ready_listeners):
            listener(key)
        return key

    def _create_binding(self, key: ConversationKey) -> _Binding:
        engine = SyncEngine(
            key,
            self.local_participant_id,
            self._store,
            clock=self._clock,
            reconciliation_window=self._reconciliation_window,
            send_timeout=self._send_timeout,
        )
        typing = TypingSignal(
            key,
            self.local_participant_id,
            self._store,
            clock=self._clock,
            idle_timeout=self._typing_idle_timeout,
            freshness=self._typing_freshness,
        )
        return _Binding(key=key, engine=engine, typing=typing)

    def _attach(self, binding: _Binding) -> None:
        binding.detach = [
            binding.engine.subscribe(
                lambda messages: self._forward_messages(binding, messages)
            ),
            binding.typing.subscribe(
                lambda pid, is_typing: self._forward_typing(binding, pid, is_typing)
            ),
            self._store.subscribe(binding.key.value, binding.engine.apply_remote_snapshot),
            self._store.subscribe_typing(binding.key.value, binding.typing.on_remote),
        ]

    def _detach(self, binding: _Binding) -> None:
        for unsubscribe in binding.detach:
            unsubscribe()
        binding.detach = []
        binding.ready = False
        binding.typing.suspend()

    def _evict(self) -> None:
        while len(self._bindings) > self._cache_size:
            key, binding = self._bindings.popitem(last=False)
            # In-flight sends keep a reference to the engine and still resolve.
            binding.engine.close()
            binding.typing.close()
            logger.debug("Evicted %s from the session cache", key.value)

    # -- projection -----------------------------------------------------------

    def on_messages(self, listener: SessionMessagesListener) -> Unsubscribe:
        self._message_listeners.append(listener)
        return lambda: _discard(self._message_listeners, listener)

    def on_typing(self, listener: SessionTypingListener) -> Unsubscribe:
        self._typing_listeners.append(listener)
        return lambda: _discard(self._typing_listeners, listener)

    def on_ready(self, listener: ReadyListener) -> Unsubscribe:
        self._ready_listeners.append(listener)
        return lambda: _discard(self._ready_listeners, listener)

    def _forward_messages(self, binding: _Binding, messages: tuple[Message, ...]) -> None:
        if self._active is not binding:
            return
        for listener in list(self._message_listeners):
            listener(binding.key, messages)

    def _forward_typing(self, binding: _Binding, participant_id: str, is_typing: bool) -> None:
        if self._active is not binding:
            return
        for listener in list(self._typing_listeners):
            listener(binding.key, participant_id, is_typing)

    # -- actions on the active conversation -----------------------------------

    def send(self, text: str) -> Message:
        binding = self._require_active()
        msg = binding.engine.send(text)
        binding.typing.stop()
        return msg

    def retry(self, message_id: str) -> Message:
        return self._require_active().engine.retry(message_id)

    def mark_read(self, upto_message_id: str) -> bool:
        return self._require_active().engine.mark_read(upto_message_id)

    def keystroke(self) -> None:
        self._require_active().typing.keystroke()

    def _require_active(self) -> _Binding:
        if self._active is None:
            raise SessionNotReadyError("No active conversation")
        return self._active

    # -- lifecycle ------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait for in-flight work of every cached conversation."""
        for binding in list(self._bindings.values()):
            await binding.engine.wait_idle()
            await binding.typing.wait_idle()

    async def close(self) -> None:
        if self._active is not None:
            self._detach(self._active)
            self._active = None
        await self.wait_idle()
        for binding in self._bindings.values():
            binding.engine.close()
            binding.typing.close()
        self._bindings.clear()
        logger.info("Session of %s closed", self.local_participant_id)


def _discard(listeners: list, listener: object) -> None:
    if listener in listeners:
        listeners.remove(listener)


