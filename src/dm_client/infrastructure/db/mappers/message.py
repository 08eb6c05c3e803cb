from __future__ import annotations

from dm_client.application.dto.store import StoreMessage
from dm_client.domain.value_objects.enums import DeliveryState
from dm_client.infrastructure.db.models.message import DirectMessageModel


def model_to_dto(model: DirectMessageModel) -> StoreMessage:
    return StoreMessage(
        id=model.id,
        conversation_key=model.conversation_key,
        sender_id=model.sender_id,
        text=model.text,
        created_at=model.created_at,
        delivery_state=DeliveryState(model.delivery_state),
    )


def dto_to_model(dto: StoreMessage) -> DirectMessageModel:
    return DirectMessageModel(
        id=dto.id,
        conversation_key=dto.conversation_key,
        sender_id=dto.sender_id,
        text=dto.text,
        created_at=dto.created_at,
        delivery_state=dto.delivery_state.value,
    )
