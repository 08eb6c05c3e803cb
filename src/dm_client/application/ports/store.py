from __future__ import annotations

from typing import Callable, Protocol

from dm_client.application.dto.store import StoreMessage

Unsubscribe = Callable[[], None]
OnMessages = Callable[[list[StoreMessage]], None]
OnTyping = Callable[[str, bool], None]


class MessageStore(Protocol):
    """Backing log for direct conversations, bound to one local participant.

    ``subscribe`` callbacks receive full or incremental snapshots and are
    invoked on the event loop thread.
    """

    participant_id: str

    async def append(self, conversation_key: str, sender_id: str, text: str) -> StoreMessage:
        """Persist a message. Raises StoreUnavailable or StoreRejected."""
        ...

    async def fetch(self, conversation_key: str) -> list[StoreMessage]: ...

    def subscribe(self, conversation_key: str, on_update: OnMessages) -> Unsubscribe: ...

    async def mark_delivered(self, conversation_key: str, message_id: str) -> None: ...

    async def mark_read(self, conversation_key: str, message_id: str) -> None: ...

    def subscribe_typing(self, conversation_key: str, on_update: OnTyping) -> Unsubscribe: ...

    async def publish_typing(self, conversation_key: str, is_typing: bool) -> None: ...
