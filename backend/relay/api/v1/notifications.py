from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from relay.core.config import NOTIFICATION_PAGE_SIZE
from relay.core.security import get_current_user_id
from relay.schemas.notification import (
    DeletedCount,
    NotificationCount,
    NotificationFilter,
    NotificationIds,
    NotificationPage,
    NotificationRead,
    Priority,
    UpdatedCount,
)
from relay.services.container import Services, get_services

router = APIRouter(prefix="/notifications", tags=["notifications"])


def notification_filter(
    type: Optional[str] = Query(None),
    is_read: Optional[bool] = Query(None, alias="isRead"),
    priority: Optional[Priority] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
) -> NotificationFilter:
    return NotificationFilter(
        type=type, is_read=is_read, priority=priority, start_date=start_date, end_date=end_date
    )


@router.get("", response_model=NotificationPage)
async def list_notifications(
    filters: NotificationFilter = Depends(notification_filter),
    limit: int = Query(NOTIFICATION_PAGE_SIZE, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    rows = await services.notifications.list(current_user_id, filters, limit, offset)
    return NotificationPage(
        notifications=[NotificationRead.model_validate(n) for n in rows],
        count=len(rows),
        limit=limit,
        offset=offset,
    )


@router.get("/unread", response_model=List[NotificationRead])
async def get_unread_notifications(
    filters: NotificationFilter = Depends(notification_filter),
    limit: int = Query(NOTIFICATION_PAGE_SIZE, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Unread notifications, high priority first, then newest"""
    return await services.notifications.get_unread(current_user_id, filters, limit, offset)


@router.get("/count", response_model=NotificationCount)
async def get_notification_count(
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return NotificationCount(**await services.notifications.count(current_user_id))


# 읽음 처리는 DeliveryEngine.acknowledge 를 거쳐 메시지 수신 확인까지 기록

@router.patch("/read-multiple", response_model=UpdatedCount)
async def mark_multiple_read(
    body: NotificationIds,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    rows = await services.delivery.acknowledge(current_user_id, body.notification_ids)
    return UpdatedCount(updated_count=len(rows))


@router.patch("/read-all", response_model=UpdatedCount)
async def mark_all_read(
    filters: NotificationFilter = Depends(notification_filter),
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    rows = await services.delivery.acknowledge(current_user_id, None, filters)
    return UpdatedCount(updated_count=len(rows))


@router.patch("/{notification_id}/read", response_model=NotificationRead)
async def mark_notification_read(
    notification_id: int,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    await services.notifications.get(current_user_id, notification_id)
    await services.delivery.acknowledge(current_user_id, [notification_id])
    return await services.notifications.get(current_user_id, notification_id)


@router.delete("/read", response_model=DeletedCount)
async def delete_read_notifications(
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    deleted = await services.notifications.delete_read(current_user_id)
    return DeletedCount(deleted_count=deleted)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: int,
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    await services.notifications.delete(current_user_id, notification_id)
