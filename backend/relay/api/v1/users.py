from fastapi import APIRouter, Depends

from relay.core.security import get_current_user_id
from relay.schemas.user import OnlineUsers
from relay.services.container import Services, get_services

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/online", response_model=OnlineUsers)
async def get_online_users(
    current_user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    online = sorted(services.presence.list_online())
    return OnlineUsers(user_ids=online, count=len(online))
