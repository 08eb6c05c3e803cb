from __future__ import annotations

from dataclasses import dataclass

from dm_client.application.exceptions import ValidationError


@dataclass(frozen=True, slots=True)
class ConversationKey:
    """Stable identity of a 1:1 conversation.

    ``participants`` is always the sorted pair, so both sides hold equal keys.
    """

    participants: tuple[str, str]

    @property
    def value(self) -> str:
        # Length-prefixed so that no two distinct pairs share an encoding,
        # whatever characters the identifiers contain.
        a, b = self.participants
        return f"dm:{len(a)}:{a}:{len(b)}:{b}"

    def peer_of(self, participant_id: str) -> str:
        a, b = self.participants
        if participant_id == a:
            return b
        if participant_id == b:
            return a
        raise ValidationError(f"{participant_id!r} is not a participant of {self.value}")

    def __str__(self) -> str:
        return self.value


def derive_key(participant_a: str, participant_b: str) -> ConversationKey:
    """Return the key shared by both participants, regardless of argument order."""
    if not participant_a or not participant_b:
        raise ValidationError("Participant identifiers must be non-empty")
    if participant_a == participant_b:
        raise ValidationError("A direct conversation needs two distinct participants")
    first, second = sorted((participant_a, participant_b))
    return ConversationKey(participants=(first, second))
