# backend/relay/api/v1/routers.py
from fastapi import APIRouter

from relay.api.v1 import chats, messages, notifications, users

# 메인 API 라우터 (/v1)
api_router = APIRouter(prefix="/v1")

# --- 각 기능별 라우터 통합 ---

# 1. 채팅방 / 멤버 / 메시지 이력
api_router.include_router(chats.router)

# 2. 메시지 상태 (수신 확인)
api_router.include_router(messages.router)

# 3. 오프라인 알림 (폴링 클라이언트용)
api_router.include_router(notifications.router)

# 4. 접속 중인 유저
api_router.include_router(users.router)
