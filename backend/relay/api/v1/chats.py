from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from relay.core.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from relay.core.security import get_current_user_id
from relay.schemas.chat import ChatCreate, ChatRead, ChatSummary, MemberRead, MembersAdd, MembersAdded
from relay.schemas.message import (
    MessageCreate,
    MessagePage,
    MessageRead,
    ReadUpTo,
    ReadUpToResult,
    UnreadCount,
)
from relay.services.container import Services, get_services

router = APIRouter(prefix="/chats", tags=["chats"])


@router.get("", response_model=List[ChatSummary])
async def list_chats(
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """내가 속한 채팅방 목록 (최근 활동 순, 안 읽은 메시지 수 포함)"""
    chats = await services.membership.list_chats_for_user(current_user_id)
    unread = await services.receipts.get_unread_counts(current_user_id)
    return [
        ChatSummary(**ChatRead.model_validate(chat).model_dump(), unread_count=unread.get(chat.id, 0))
        for chat in chats
    ]


@router.post("", response_model=ChatRead, status_code=status.HTTP_201_CREATED)
async def create_chat(
    chat_data: ChatCreate,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Create a private or group chat. A duplicate private chat answers 409 with the existing id."""
    return await services.membership.create_chat(
        current_user_id, chat_data.type, chat_data.name, chat_data.member_ids
    )


# --- Members ---

@router.get("/{chat_id}/members", response_model=List[MemberRead])
async def get_members(
    chat_id: int,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    await services.membership.get_chat(chat_id)
    await services.membership.require_member(chat_id, current_user_id)
    return await services.membership.list_member_details(chat_id)


@router.post("/{chat_id}/members", response_model=MembersAdded)
async def add_members(
    chat_id: int,
    body: MembersAdd,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Add members (admin only)"""
    added = await services.membership.add_members(chat_id, current_user_id, body.member_ids)
    return MembersAdded(added_members=added)


@router.delete("/{chat_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    chat_id: int,
    user_id: int,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Remove a member (admin only) or leave the chat"""
    await services.membership.remove_member(chat_id, current_user_id, user_id)


# --- Messages ---

@router.get("/{chat_id}/messages", response_model=MessagePage)
async def get_messages(
    chat_id: int,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: Optional[int] = Query(None, ge=0),
    before: Optional[int] = Query(None),
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """
    Chat history in chronological order.
    `before` pages backwards by message id, `offset` by position.
    """
    await services.membership.get_chat(chat_id)
    await services.membership.require_member(chat_id, current_user_id)

    messages = await services.store.list(chat_id, limit=limit, before=before, offset=offset)
    statuses = await services.receipts.get_aggregate_statuses(messages)
    items = [
        MessageRead(**MessageRead.model_validate(m).model_dump(exclude={"status"}), status=statuses.get(m.id, "sent"))
        for m in reversed(messages)
    ]
    return MessagePage(messages=items, limit=limit, offset=offset, before=before)


@router.post("/{chat_id}/messages", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: int,
    body: MessageCreate,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    await services.membership.get_chat(chat_id)
    return await services.delivery.send(chat_id, current_user_id, body.content, body.type)


@router.get("/{chat_id}/unread-count", response_model=UnreadCount)
async def get_unread_count(
    chat_id: int,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    await services.membership.require_member(chat_id, current_user_id)
    count = await services.receipts.get_unread_count(current_user_id, chat_id)
    return UnreadCount(chat_id=chat_id, unread_count=count)


@router.post("/{chat_id}/read", response_model=ReadUpToResult)
async def mark_chat_read(
    chat_id: int,
    body: ReadUpTo,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Mark every message up to (and including) messageId as read"""
    ids = await services.delivery.mark_read_up_to(current_user_id, chat_id, body.message_id)
    return ReadUpToResult(message_ids=ids)
