"""Optimistic message list for one conversation, reconciled with the store."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import Any, Awaitable, Callable, Coroutine, Sequence

from dm_client.application.dto.store import StoreMessage
from dm_client.application.exceptions import (
    NotFoundError,
    ReconciliationAmbiguous,
    StoreError,
    ValidationError,
)
from dm_client.application.ports.clock import Clock, MonotonicClock, SystemClock
from dm_client.application.ports.store import MessageStore, Unsubscribe
from dm_client.config import settings
from dm_client.domain.entities.message import Message
from dm_client.domain.value_objects.conversation_key import ConversationKey
from dm_client.domain.value_objects.enums import DeliveryState

logger = logging.getLogger(__name__)

MessagesListener = Callable[[tuple[Message, ...]], None]

_ECHO_STATES = (DeliveryState.PENDING, DeliveryState.SENT)


class SyncEngine:
    """Owns the ordered, deduplicated message list of one conversation.

    All mutation happens on the event loop: ``send`` inserts synchronously and
    only the store round-trip runs in a background task, whose outcome is
    folded back into this engine even after it stops being the active one.
    """

    def __init__(
        self,
        key: ConversationKey,
        local_participant_id: str,
        store: MessageStore,
        *,
        clock: Clock | None = None,
        reconciliation_window: float | None = None,
        send_timeout: float | None = None,
    ) -> None:
        self.key = key
        self.local_participant_id = local_participant_id
        self.peer_id = key.peer_of(local_participant_id)
        self._store = store
        self._clock = clock or SystemClock()
        self._window = timedelta(
            seconds=settings.RECONCILIATION_WINDOW_SECONDS
            if reconciliation_window is None
            else reconciliation_window
        )
        self._send_timeout = (
            settings.SEND_TIMEOUT_SECONDS if send_timeout is None else send_timeout
        )
        self._messages: list[Message] = []
        self._listeners: list[MessagesListener] = []
        self._inflight: set[asyncio.Task[None]] = set()
        self._stamps = MonotonicClock(self._clock)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    # -- writes ---------------------------------------------------------------

    def send(self, text: str) -> Message:
        """Insert a PENDING message now and submit it to the store in the background."""
        body = text.strip()
        if not body:
            raise ValidationError("Message text must not be blank")

        created_at = self._stamps.now()
        local_id = uuid.uuid4().hex
        msg = Message(
            id=local_id,
            conversation_key=self.key.value,
            sender_id=self.local_participant_id,
            text=body,
            created_at=created_at,
            delivery_state=DeliveryState.PENDING,
            client_msg_id=local_id,
        )
        self._messages.append(msg)
        self._sort()
        logger.debug("Queued %s in %s", local_id, self.key.value)
        self._notify()

        self._spawn(self._submit(local_id, body), name=f"dm-send-{local_id}")
        return msg

    def retry(self, message_id: str) -> Message:
        """Send the text of a FAILED message again as a new message."""
        idx = self._index_of(message_id)
        if idx is None:
            raise NotFoundError(f"Message {message_id} not found")
        failed = self._messages[idx]
        if failed.delivery_state != DeliveryState.FAILED:
            raise ValidationError("Only failed messages can be retried")
        return self.send(failed.text)

    async def _submit(self, client_msg_id: str, text: str) -> None:
        try:
            stored = await asyncio.wait_for(
                self._store.append(self.key.value, self.local_participant_id, text),
                timeout=self._send_timeout,
            )
        except TimeoutError:
            logger.warning(
                "Send %s timed out after %.1fs", client_msg_id, self._send_timeout,
            )
            self._fail(client_msg_id)
            return
        except StoreError as exc:
            logger.warning(
                "Send %s failed: %s: %s", client_msg_id, type(exc).__name__, exc.detail,
            )
            self._fail(client_msg_id)
            return
        except Exception:
            logger.exception("Unexpected store error while sending %s", client_msg_id)
            self._fail(client_msg_id)
            return

        self._on_ack(client_msg_id, stored)

    def _fail(self, client_msg_id: str) -> None:
        idx = self._index_by_client_id(client_msg_id)
        if idx is None:
            return
        msg = self._messages[idx]
        if not msg.can_transition(DeliveryState.FAILED):
            return
        self._messages[idx] = msg.advance(DeliveryState.FAILED)
        logger.debug("Message %s failed", client_msg_id)
        self._notify()

    def _on_ack(self, client_msg_id: str, stored: StoreMessage) -> None:
        idx = self._index_by_client_id(client_msg_id)
        if idx is None:
            return
        local = self._messages[idx]
        if local.delivery_state == DeliveryState.FAILED:
            logger.warning(
                "Store acknowledged %s as %s after it was marked failed",
                client_msg_id, stored.id,
            )
            return

        echo_idx = self._index_by_id(stored.id)
        if echo_idx is not None and echo_idx != idx:
            # The echo was inserted on its own before the ack; keep it and
            # drop the optimistic entry.
            echo = self._messages[echo_idx]
            self._messages[echo_idx] = _merge_state(
                replace(echo, client_msg_id=client_msg_id), stored.delivery_state,
            )
            del self._messages[idx]
        else:
            self._messages[idx] = _merge_state(
                replace(local, id=stored.id, created_at=stored.created_at),
                stored.delivery_state,
            )
        self._sort()
        logger.debug("Message %s acknowledged as %s", client_msg_id, stored.id)
        self._notify()

    # -- reads ----------------------------------------------------------------

    def apply_remote_snapshot(self, messages: Sequence[StoreMessage]) -> None:
        """Merge a full or incremental store view into the local list."""
        before = tuple(self._messages)

        incoming = sorted(
            (m for m in messages if m.conversation_key == self.key.value),
            key=lambda m: (m.created_at, m.id),
        )
        if len(incoming) != len(messages):
            logger.debug(
                "Ignored %d messages for other conversations", len(messages) - len(incoming),
            )

        seen: set[str] = set()
        for remote in incoming:
            seen.add(remote.id)
            idx = self._index_by_id(remote.id)
            if idx is not None:
                self._messages[idx] = _merge_state(self._messages[idx], remote.delivery_state)
                continue

            if remote.sender_id == self.local_participant_id:
                idx = self._match_echo(remote)
                if idx is not None:
                    local = self._messages[idx]
                    self._messages[idx] = _merge_state(
                        replace(local, id=remote.id, created_at=remote.created_at),
                        remote.delivery_state,
                    )
                    continue

            self._messages.append(
                Message(
                    id=remote.id,
                    conversation_key=remote.conversation_key,
                    sender_id=remote.sender_id,
                    text=remote.text,
                    created_at=remote.created_at,
                    delivery_state=remote.delivery_state,
                )
            )

        self._expire_pending(seen)
        self._sort()
        delivered_upto = self._acknowledge_delivery()

        if tuple(self._messages) != before:
            self._notify()
        if delivered_upto is not None:
            self._spawn(
                self._persist_marker("delivered", self._store.mark_delivered, delivered_upto),
                name=f"dm-delivered-{delivered_upto}",
            )

    def _match_echo(self, remote: StoreMessage) -> int | None:
        candidates = [
            i
            for i, m in enumerate(self._messages)
            if m.awaiting_echo
            and m.delivery_state in _ECHO_STATES
            and m.sender_id == remote.sender_id
            and m.text == remote.text
            and abs(m.created_at - remote.created_at) <= self._window
        ]
        try:
            return self._pick_candidate(remote, candidates)
        except ReconciliationAmbiguous as exc:
            logger.warning(
                "%s: using the earliest of %d candidates", exc.detail, len(exc.candidates),
            )
            return min(exc.candidates, key=lambda i: self._messages[i].sort_key)

    def _pick_candidate(self, remote: StoreMessage, candidates: list[int]) -> int | None:
        if not candidates:
            return None
        if len(candidates) > 1:
            raise ReconciliationAmbiguous(
                f"Echo {remote.id} in {self.key.value} matches several pending messages",
                candidates,
            )
        return candidates[0]

    def _expire_pending(self, seen: set[str]) -> None:
        now = self._clock.now()
        bound = timedelta(seconds=self._send_timeout)
        for i, m in enumerate(self._messages):
            if (
                m.delivery_state == DeliveryState.PENDING
                and m.id not in seen
                and now - m.created_at > bound
            ):
                logger.warning("Message %s not confirmed by the store, marking failed", m.id)
                self._messages[i] = m.advance(DeliveryState.FAILED)

    def _acknowledge_delivery(self) -> str | None:
        """Move the peer's SENT messages to DELIVERED; return the newest one."""
        newest: str | None = None
        for i, m in enumerate(self._messages):
            if m.sender_id == self.peer_id and m.delivery_state == DeliveryState.SENT:
                self._messages[i] = m.advance(DeliveryState.DELIVERED)
                newest = m.id
        return newest

    def mark_read(self, upto_message_id: str) -> bool:
        """Mark the peer's messages up to ``upto_message_id`` as READ.

        Returns False when nothing changed; the store is only asked to persist
        the marker when something did.
        """
        idx = self._index_of(upto_message_id)
        if idx is None:
            raise NotFoundError(f"Message {upto_message_id} not found")
        boundary = self._messages[idx].created_at

        newest: str | None = None
        for i, m in enumerate(self._messages):
            if m.sender_id == self.local_participant_id or m.created_at > boundary:
                continue
            if m.can_transition(DeliveryState.READ):
                self._messages[i] = m.advance(DeliveryState.READ)
                newest = m.id

        if newest is None:
            return False

        self._notify()
        self._spawn(
            self._persist_marker("read", self._store.mark_read, newest),
            name=f"dm-read-{newest}",
        )
        return True

    async def _persist_marker(
        self,
        kind: str,
        operation: Callable[[str, str], Awaitable[None]],
        message_id: str,
    ) -> None:
        try:
            await operation(self.key.value, message_id)
        except StoreError as exc:
            logger.warning(
                "Could not persist %s marker %s in %s: %s",
                kind, message_id, self.key.value, exc.detail,
            )

    # -- listeners ------------------------------------------------------------

    def subscribe(self, listener: MessagesListener) -> Unsubscribe:
        """Register ``listener``; it receives the current list immediately."""
        self._listeners.append(listener)
        listener(self.messages)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.messages
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Message listener failed in %s", self.key.value)

    # -- lifecycle ------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait until every in-flight store round-trip has resolved."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def close(self) -> None:
        """Stop notifying listeners. In-flight sends still resolve here."""
        self._listeners.clear()

    # -- helpers --------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def _sort(self) -> None:
        self._messages.sort(key=lambda m: m.sort_key)

    def _index_by_id(self, message_id: str) -> int | None:
        for i, m in enumerate(self._messages):
            if m.id == message_id:
                return i
        return None

    def _index_by_client_id(self, client_msg_id: str) -> int | None:
        for i, m in enumerate(self._messages):
            if m.client_msg_id == client_msg_id:
                return i
        return None

    def _index_of(self, message_id: str) -> int | None:
        idx = self._index_by_id(message_id)
        if idx is None:
            idx = self._index_by_client_id(message_id)
        return idx


def _merge_state(msg: Message, remote_state: DeliveryState) -> Message:
    """Apply a store-reported state; a store copy is at least SENT."""
    return msg.advance(DeliveryState.SENT).advance(remote_state)
