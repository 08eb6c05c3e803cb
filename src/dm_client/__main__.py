"""Entrypoint: python -m dm_client [message ...]

Runs a local conversation against an auto-responding peer.
"""
from __future__ import annotations

import asyncio
import logging
import sys

from dm_client.application.ports.clock import SystemClock
from dm_client.domain.entities.message import Message
from dm_client.domain.value_objects.conversation_key import ConversationKey
from dm_client.infrastructure.stores.memory import InMemoryBackend, InMemoryMessageStore
from dm_client.services.auto_responder import AutoResponder
from dm_client.services.conversation_session import ConversationSession
from dm_client.services.projection import project

LOCAL_USER = "you"
DEMO_PEER = "demo-bot"
DEFAULT_LINES = ("hi there", "how are you?", "bye!")


async def run_demo(lines: list[str]) -> None:
    clock = SystemClock()
    backend = InMemoryBackend(clock=clock)
    me = ConversationSession(LOCAL_USER, InMemoryMessageStore(backend, LOCAL_USER), clock=clock)
    bot = ConversationSession(DEMO_PEER, InMemoryMessageStore(backend, DEMO_PEER), clock=clock)

    def render(key: ConversationKey, messages: tuple[Message, ...]) -> None:
        print(f"--- {key.peer_of(LOCAL_USER)} ---")
        for row in project(messages, LOCAL_USER, clock.now()):
            marker = "!" if row.failed else "✓" * row.ticks
            side = ">" if row.is_sent else "<"
            print(f"{side} {row.text}  [{row.time_label}] {marker}")

    def show_typing(key: ConversationKey, participant_id: str, is_typing: bool) -> None:
        if is_typing:
            print(f"... {participant_id} is typing")

    me.on_messages(render)
    me.on_typing(show_typing)

    await bot.switch_to(LOCAL_USER)
    await me.switch_to(DEMO_PEER)
    responder = AutoResponder(bot)

    try:
        for line in lines:
            me.send(line)
            await asyncio.sleep(0.1)
            await responder.wait_idle()
            last_incoming = next(
                (m for m in reversed(me.messages) if m.sender_id == DEMO_PEER), None,
            )
            if last_incoming is not None:
                me.mark_read(last_incoming.id)
    finally:
        responder.close()
        await me.close()
        await bot.close()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    lines = sys.argv[1:] or list(DEFAULT_LINES)
    asyncio.run(run_demo(lines))


if __name__ == "__main__":
    main()
