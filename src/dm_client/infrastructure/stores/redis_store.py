"""Redis-backed push store: hash + sorted-set timeline, Pub/Sub fan-out."""
from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Coroutine

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from dm_client.application.dto.store import StoreMessage, TypingEvent
from dm_client.application.exceptions import StoreRejected, StoreUnavailable
from dm_client.application.ports.clock import Clock, MonotonicClock
from dm_client.application.ports.store import OnMessages, OnTyping, Unsubscribe
from dm_client.config import settings
from dm_client.domain.value_objects.enums import DELIVERY_RANK, DeliveryState
from dm_client.infrastructure.bus.serializer import (
    MESSAGE_CREATED,
    MESSAGES_UPDATED,
    TYPING,
    deserialize_event,
    serialize_event,
)

logger = logging.getLogger(__name__)

OnEventCallback = Callable[[str, dict[str, Any]], Coroutine[Any, Any, None]]

MAX_WATCH_RETRIES = 5


class ChannelListener:
    """Background task that listens to a Redis channel and dispatches events."""

    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str,
        callback: OnEventCallback,
    ) -> None:
        self._redis = redis
        self._channel = channel
        self._callback = callback
        self._task: asyncio.Task[None] | None = None
        self.stopping = False

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(
            self._listen(), name=f"redis-listener-{self._channel}",
        )
        logger.info("Redis listener started on channel=%s", self._channel)

    def stop(self) -> None:
        """Cancel the listen loop; ``wait_stopped`` awaits its cleanup."""
        self.stopping = True
        if self._task and not self._task.done():
            self._task.cancel()

    async def wait_stopped(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Redis listener stopped on channel=%s", self._channel)

    async def _listen(self) -> None:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    event_type, data = deserialize_event(message["data"])
                    await self._callback(event_type, data)
                except Exception:
                    logger.exception("Error processing pubsub message on %s", self._channel)
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()


class RedisMessageStore:
    """MessageStore over Redis for one participant.

    Every mutation publishes an event on the conversation channel; each
    subscription re-reads the full timeline when an event arrives.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        participant_id: str,
        *,
        prefix: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._redis = redis
        self.participant_id = participant_id
        self._prefix = prefix or settings.REDIS_KEY_PREFIX
        self._clock = MonotonicClock(clock)
        self._listeners: list[ChannelListener] = []

    def _messages_key(self, conversation_key: str) -> str:
        return f"{self._prefix}:{conversation_key}:messages"

    def _timeline_key(self, conversation_key: str) -> str:
        return f"{self._prefix}:{conversation_key}:timeline"

    def _events_channel(self, conversation_key: str) -> str:
        return f"{self._prefix}:{conversation_key}:events"

    def _typing_channel(self, conversation_key: str) -> str:
        return f"{self._prefix}:{conversation_key}:typing"

    async def append(self, conversation_key: str, sender_id: str, text: str) -> StoreMessage:
        if sender_id != self.participant_id:
            raise StoreRejected(f"{self.participant_id} cannot send as {sender_id}")
        msg = StoreMessage(
            id=uuid.uuid4().hex,
            conversation_key=conversation_key,
            sender_id=sender_id,
            text=text,
            created_at=self._clock.now(),
            delivery_state=DeliveryState.SENT,
        )
        async with _translate_errors():
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._messages_key(conversation_key), msg.id, msg.model_dump_json())
                pipe.zadd(
                    self._timeline_key(conversation_key), {msg.id: msg.created_at.timestamp()},
                )
                await pipe.execute()
        # Stored; a lost announcement is picked up by the next event or fetch.
        await self._announce(
            conversation_key, serialize_event(MESSAGE_CREATED, {"message_id": msg.id}),
        )
        return msg

    async def _announce(self, conversation_key: str, raw: str) -> None:
        try:
            await self._redis.publish(self._events_channel(conversation_key), raw)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning(
                "Could not announce change in %s: %s", conversation_key, exc,
            )

    async def fetch(self, conversation_key: str) -> list[StoreMessage]:
        async with _translate_errors():
            ids = await self._redis.zrange(self._timeline_key(conversation_key), 0, -1)
            if not ids:
                return []
            raws = await self._redis.hmget(self._messages_key(conversation_key), ids)
        messages = [StoreMessage.model_validate_json(raw) for raw in raws if raw]
        messages.sort(key=lambda m: (m.created_at, m.id))
        return messages

    async def mark_delivered(self, conversation_key: str, message_id: str) -> None:
        await self._advance(conversation_key, message_id, DeliveryState.DELIVERED)

    async def mark_read(self, conversation_key: str, message_id: str) -> None:
        await self._advance(conversation_key, message_id, DeliveryState.READ)

    async def _advance(self, conversation_key: str, message_id: str, state: DeliveryState) -> None:
        """Move messages forward to ``state`` under WATCH, retrying on concurrent writes."""
        messages_key = self._messages_key(conversation_key)
        timeline_key = self._timeline_key(conversation_key)

        async with _translate_errors():
            async with self._redis.pipeline(transaction=True) as pipe:
                for _attempt in range(MAX_WATCH_RETRIES):
                    try:
                        await pipe.watch(messages_key, timeline_key)
                        ids = await pipe.zrange(timeline_key, 0, -1)
                        raws = await pipe.hmget(messages_key, ids) if ids else []
                        updated = _forward_updates(
                            [StoreMessage.model_validate_json(raw) for raw in raws if raw],
                            message_id,
                            state,
                        )
                        if not updated:
                            return
                        pipe.multi()
                        pipe.hset(messages_key, mapping=updated)
                        await pipe.execute()
                        break
                    except WatchError:
                        logger.debug("Concurrent update of %s, retrying", message_id)
                else:
                    raise StoreUnavailable(
                        f"Gave up advancing {message_id} after {MAX_WATCH_RETRIES} attempts",
                    )

        await self._announce(
            conversation_key,
            serialize_event(MESSAGES_UPDATED, {"message_ids": list(updated), "state": state}),
        )

    def subscribe(self, conversation_key: str, on_update: OnMessages) -> Unsubscribe:
        async def _on_event(event_type: str, data: dict[str, Any]) -> None:
            on_update(await self.fetch(conversation_key))

        return self._start_listener(self._events_channel(conversation_key), _on_event)

    def subscribe_typing(self, conversation_key: str, on_update: OnTyping) -> Unsubscribe:
        async def _on_event(event_type: str, data: dict[str, Any]) -> None:
            event = TypingEvent.model_validate(data)
            on_update(event.participant_id, event.is_typing)

        return self._start_listener(self._typing_channel(conversation_key), _on_event)

    def _start_listener(self, channel: str, callback: OnEventCallback) -> Unsubscribe:
        listener = ChannelListener(self._redis, channel, callback)
        self._listeners.append(listener)
        listener.start()
        return listener.stop

    async def wait_idle(self) -> None:
        """Wait for stopped listeners to finish unsubscribing."""
        stopped = [listener for listener in self._listeners if listener.stopping]
        for listener in stopped:
            self._listeners.remove(listener)
        await self._reap(stopped)

    async def close(self) -> None:
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener.stop()
        await self._reap(listeners)

    @staticmethod
    async def _reap(listeners: list[ChannelListener]) -> None:
        for listener in listeners:
            try:
                await listener.wait_stopped()
            except Exception:
                logger.exception("Redis listener cleanup failed")

    async def publish_typing(self, conversation_key: str, is_typing: bool) -> None:
        event = TypingEvent(participant_id=self.participant_id, is_typing=is_typing)
        async with _translate_errors():
            await self._redis.publish(
                self._typing_channel(conversation_key),
                serialize_event(TYPING, event),
            )


def build_redis(url: str | None = None) -> aioredis.Redis:
    """Client configured the way RedisMessageStore expects (str responses)."""
    return aioredis.from_url(url or settings.REDIS_URL, decode_responses=True)


@asynccontextmanager
async def _translate_errors() -> AsyncIterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise StoreUnavailable(str(exc)) from exc
    except ResponseError as exc:
        raise StoreRejected(str(exc)) from exc


def _forward_updates(
    messages: list[StoreMessage], message_id: str, state: DeliveryState,
) -> dict[str, str]:
    """Serialized messages that ``state`` moves forward, up to and including the marker."""
    target = next((m for m in messages if m.id == message_id), None)
    if target is None:
        raise StoreRejected(f"Unknown message {message_id}")
    return {
        m.id: m.model_copy(update={"delivery_state": state}).model_dump_json()
        for m in messages
        if m.sender_id == target.sender_id
        and m.created_at <= target.created_at
        and DELIVERY_RANK[m.delivery_state] < DELIVERY_RANK[state]
    }
