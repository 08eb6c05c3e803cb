"""Shared test fixtures."""
from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from dm_client.application.dto.store import StoreMessage
from dm_client.application.exceptions import StoreError
from dm_client.domain.value_objects.conversation_key import ConversationKey, derive_key
from dm_client.domain.value_objects.enums import DeliveryState

ALICE = "alice"
BOB = "bob"
CAROL = "carol"

T0 = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


async def settle(turns: int = 10) -> None:
    """Let call_soon callbacks and freshly spawned tasks run."""
    for _ in range(turns):
        await asyncio.sleep(0)


@dataclass
class FakeClock:
    current: datetime = T0

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def alice_bob() -> ConversationKey:
    return derive_key(ALICE, BOB)


def make_store_message(
    key: ConversationKey,
    *,
    sender_id: str = BOB,
    text: str = "hello",
    created_at: datetime = T0,
    message_id: str | None = None,
    delivery_state: DeliveryState = DeliveryState.SENT,
) -> StoreMessage:
    return StoreMessage(
        id=message_id or f"srv-{uuid.uuid4().hex[:8]}",
        conversation_key=key.value,
        sender_id=sender_id,
        text=text,
        created_at=created_at,
        delivery_state=delivery_state,
    )


@dataclass
class ScriptedStore:
    """MessageStore double whose outcomes the test controls.

    ``gate`` makes ``append`` wait before persisting, ``ack_gate`` after
    persisting but before acknowledging; ``fail_with`` makes it raise.
    Pushes are delivered synchronously through ``push`` / ``push_typing``.
    """

    clock: FakeClock
    participant_id: str = ALICE
    gate: asyncio.Event | None = None
    ack_gate: asyncio.Event | None = None
    fail_with: StoreError | None = None
    fetch_error: StoreError | None = None
    typing_error: Exception | None = None
    remote: dict[str, list[StoreMessage]] = field(default_factory=dict)
    appended: list[StoreMessage] = field(default_factory=list)
    read_markers: list[tuple[str, str]] = field(default_factory=list)
    delivered_markers: list[tuple[str, str]] = field(default_factory=list)
    typing_published: list[tuple[str, bool]] = field(default_factory=list)
    message_subs: dict[str, list[Callable[[list[StoreMessage]], None]]] = field(
        default_factory=lambda: defaultdict(list)
    )
    typing_subs: dict[str, list[Callable[[str, bool], None]]] = field(
        default_factory=lambda: defaultdict(list)
    )

    async def append(self, conversation_key: str, sender_id: str, text: str) -> StoreMessage:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        msg = StoreMessage(
            id=f"srv-{len(self.appended) + 1}",
            conversation_key=conversation_key,
            sender_id=sender_id,
            text=text,
            created_at=self.clock.now(),
            delivery_state=DeliveryState.SENT,
        )
        self.appended.append(msg)
        self.remote.setdefault(conversation_key, []).append(msg)
        if self.ack_gate is not None:
            await self.ack_gate.wait()
        return msg

    async def fetch(self, conversation_key: str) -> list[StoreMessage]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.remote.get(conversation_key, []))

    def subscribe(self, conversation_key: str, on_update: Callable[[list[StoreMessage]], None]):
        self.message_subs[conversation_key].append(on_update)
        return lambda: self.message_subs[conversation_key].remove(on_update)

    def subscribe_typing(self, conversation_key: str, on_update: Callable[[str, bool], None]):
        self.typing_subs[conversation_key].append(on_update)
        return lambda: self.typing_subs[conversation_key].remove(on_update)

    async def mark_delivered(self, conversation_key: str, message_id: str) -> None:
        self.delivered_markers.append((conversation_key, message_id))

    async def mark_read(self, conversation_key: str, message_id: str) -> None:
        self.read_markers.append((conversation_key, message_id))

    async def publish_typing(self, conversation_key: str, is_typing: bool) -> None:
        if self.typing_error is not None:
            raise self.typing_error
        self.typing_published.append((conversation_key, is_typing))

    def push(self, conversation_key: str, messages: list[StoreMessage]) -> None:
        for callback in list(self.message_subs[conversation_key]):
            callback(messages)

    def push_typing(self, conversation_key: str, participant_id: str, is_typing: bool) -> None:
        for callback in list(self.typing_subs[conversation_key]):
            callback(participant_id, is_typing)


@pytest.fixture
def store(clock: FakeClock) -> ScriptedStore:
    return ScriptedStore(clock=clock)


class FakePubSub:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        self.channels.add(channel)
        self._redis.pubsubs.append(self)
        await self._queue.put({"type": "subscribe", "channel": channel, "data": 1})

    async def unsubscribe(self, channel: str) -> None:
        self.channels.discard(channel)

    async def aclose(self) -> None:
        if self in self._redis.pubsubs:
            self._redis.pubsubs.remove(self)

    def deliver(self, channel: str, data: str) -> None:
        self._queue.put_nowait({"type": "message", "channel": channel, "data": data})

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            yield await self._queue.get()


class FakePipeline:
    """WATCH/MULTI/EXEC over FakeRedis: buffered writes fail if a watched key moved."""

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._watched: dict[str, int] = {}
        self._queued: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.reset()

    def reset(self) -> None:
        self._watched = {}
        self._queued = []

    async def watch(self, *names: str) -> None:
        self._redis._check()
        self._watched.update({name: self._redis.versions[name] for name in names})

    async def zrange(self, name: str, start: int, end: int) -> list[str]:
        return await self._redis.zrange(name, start, end)

    async def hmget(self, name: str, keys: list[str]) -> list[str | None]:
        return await self._redis.hmget(name, keys)

    def multi(self) -> None:
        self._queued = []

    def hset(self, name: str, key: str | None = None, value: str | None = None, mapping=None):
        self._queued.append(("_hset", (name, key, value, mapping), {}))
        return self

    def zadd(self, name: str, mapping: dict[str, float]):
        self._queued.append(("_zadd", (name, mapping), {}))
        return self

    async def execute(self) -> list[Any]:
        try:
            self._redis._check()
            if any(self._redis.versions[n] != v for n, v in self._watched.items()):
                raise WatchError("Watched variable changed.")
            return [getattr(self._redis, op)(*args, **kw) for op, args, kw in self._queued]
        finally:
            self.reset()


@dataclass
class FakeRedis:
    """The subset of redis.asyncio.Redis used by RedisMessageStore (decode_responses=True).

    ``yield_reads`` hands the loop to other tasks after every hash read;
    ``publish_fails`` makes Pub/Sub unreachable while storage keeps working.
    """

    hashes: dict[str, dict[str, str]] = field(default_factory=lambda: defaultdict(dict))
    zsets: dict[str, dict[str, float]] = field(default_factory=lambda: defaultdict(dict))
    versions: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    pubsubs: list[FakePubSub] = field(default_factory=list)
    published: list[tuple[str, str]] = field(default_factory=list)
    down: bool = False
    yield_reads: bool = False
    publish_fails: bool = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("Connection refused")

    def _hset(self, name, key=None, value=None, mapping=None) -> int:
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        self.hashes[name].update(items)
        self.versions[name] += 1
        return len(items)

    def _zadd(self, name: str, mapping: dict[str, float]) -> int:
        self.zsets[name].update(mapping)
        self.versions[name] += 1
        return len(mapping)

    async def hset(
        self,
        name: str,
        key: str | None = None,
        value: str | None = None,
        mapping: dict[str, str] | None = None,
    ) -> int:
        self._check()
        return self._hset(name, key, value, mapping)

    async def hmget(self, name: str, keys: list[str]) -> list[str | None]:
        self._check()
        values = [self.hashes[name].get(k) for k in keys]
        if self.yield_reads:
            await asyncio.sleep(0)
        return values

    async def zadd(self, name: str, mapping: dict[str, float]) -> int:
        self._check()
        return self._zadd(name, mapping)

    async def zrange(self, name: str, start: int, end: int) -> list[str]:
        self._check()
        ordered = sorted(self.zsets[name].items(), key=lambda item: (item[1], item[0]))
        ids = [member for member, _score in ordered]
        return ids[start:] if end == -1 else ids[start:end + 1]

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        if self.publish_fails:
            raise RedisConnectionError("Error 111 connecting to pubsub")
        self.published.append((channel, message))
        receivers = [p for p in self.pubsubs if channel in p.channels]
        for pubsub in receivers:
            pubsub.deliver(channel, message)
        return len(receivers)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
