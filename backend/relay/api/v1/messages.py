from fastapi import APIRouter, Depends

from relay.core.errors import NotMemberError
from relay.core.security import get_current_user_id
from relay.schemas.message import MessageStatusSummary, MessageStatusUpdate
from relay.services.container import Services, get_services

router = APIRouter(prefix="/messages", tags=["messages"])


async def _summary(services: Services, message_id: int, user_id: int) -> MessageStatusSummary:
    summary = await services.receipts.get_status_summary(message_id)
    if not await services.membership.is_member(summary["chat_id"], user_id):
        raise NotMemberError("Access denied to this chat", details={"chatId": summary["chat_id"]})
    return MessageStatusSummary(**summary)


@router.get("/{message_id}/status", response_model=MessageStatusSummary)
async def get_message_status(
    message_id: int,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Aggregate status as the sender sees it, with recipient counts"""
    return await _summary(services, message_id, current_user_id)


@router.patch("/{message_id}/status", response_model=MessageStatusSummary)
async def update_message_status(
    message_id: int,
    body: MessageStatusUpdate,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """수신자가 메시지를 받음/읽음으로 표시 (멱등)"""
    if body.status == "read":
        await services.delivery.mark_read(current_user_id, message_id)
    else:
        await services.delivery.mark_delivered(current_user_id, message_id)
    return await _summary(services, message_id, current_user_id)
