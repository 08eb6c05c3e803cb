"""Scripted peer used by the demo: types for a moment, then answers."""
from __future__ import annotations

import asyncio
import logging
import random
import re

from dm_client.domain.entities.message import Message
from dm_client.domain.value_objects.conversation_key import ConversationKey
from dm_client.services.conversation_session import ConversationSession

logger = logging.getLogger(__name__)

DEMO_RESPONSES = [
    "Hey! How's it going?",
    "That sounds awesome!",
    "I'm doing great, thanks for asking!",
    "What are you up to today?",
    "Nice! Let me know how it goes",
    "Haha, that's so funny!",
    "I totally agree with you on that",
    "Sounds like a plan!",
    "Hope you have a great day!",
    "Talk to you soon!",
]

_GREETING = re.compile(r"\b(hello|hi)\b")


def pick_response(text: str, rng: random.Random) -> str:
    lowered = text.lower()
    if _GREETING.search(lowered):
        return "Hello! Nice to meet you!"
    if "how are you" in lowered:
        return "I'm doing great! Thanks for asking. How about you?"
    if "bye" in lowered:
        return "See you later! Have a great day!"
    return rng.choice(DEMO_RESPONSES)


class AutoResponder:
    """Answers every incoming message of the session's active conversation."""

    def __init__(
        self,
        session: ConversationSession,
        *,
        rng: random.Random | None = None,
        min_delay: float = 1.0,
        max_delay: float = 3.0,
    ) -> None:
        self._session = session
        self._rng = rng or random.Random()
        self._min_delay = min_delay
        self._max_delay = max_delay
        self._answered: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._unsubscribe = session.on_messages(self._on_messages)

    def _on_messages(self, key: ConversationKey, messages: tuple[Message, ...]) -> None:
        for msg in messages:
            if msg.sender_id == self._session.local_participant_id or msg.id in self._answered:
                continue
            self._answered.add(msg.id)
            task = asyncio.get_running_loop().create_task(
                self._reply(msg), name=f"dm-autoreply-{msg.id}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _reply(self, incoming: Message) -> None:
        self._session.mark_read(incoming.id)
        self._session.keystroke()
        await asyncio.sleep(self._rng.uniform(self._min_delay, self._max_delay))
        reply = pick_response(incoming.text, self._rng)
        logger.debug("Auto-replying to %s", incoming.id)
        self._session.send(reply)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        self._unsubscribe()
        for task in self._tasks:
            task.cancel()
