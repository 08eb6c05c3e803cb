"""Import all models so Base.metadata sees every table."""
from dm_client.infrastructure.db.models.message import DirectMessageModel
from dm_client.infrastructure.db.models.typing_state import TypingStateModel

__all__ = [
    "DirectMessageModel",
    "TypingStateModel",
]
