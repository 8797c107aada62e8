import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay.api.v1.routers import api_router
from relay.core.config import ALLOWED_ORIGINS, MEMBERSHIP_CACHE_ENABLED
from relay.core.errors import RelayError
from relay.core.logging_config import setup_logging
from relay.db.database import AsyncSessionLocal, engine, init_db
from relay.db.database_redis import RedisManager
from relay.services.container import Services, build_services
from relay.sockets.chat_socket import router as websocket_router

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    services가 주어지면 그대로 사용 (테스트), 없으면 lifespan에서 DB/Redis로 구성합니다.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # 1. DB 초기화 (테이블 생성)
        await init_db(engine)

        # 2. 서비스 구성
        if getattr(app.state, "services", None) is None:
            redis_client = RedisManager.get_client() if MEMBERSHIP_CACHE_ENABLED else None
            app.state.services = build_services(AsyncSessionLocal, redis_client)

        # 3. 읽은 알림 정리 작업 시작
        app.state.services.sweeper.start()
        logger.info("[App] relay started")
        try:
            yield
        finally:
            # 서버 종료 시 리소스를 안전하게 해제합니다.
            await app.state.services.sweeper.stop()
            await RedisManager.close()
            await engine.dispose()
            logger.info("[App] relay stopped")

    setup_logging()
    app = FastAPI(title="Relay API", lifespan=lifespan)
    app.state.services = services

    # 프론트엔드가 다른 도메인에서 API를 호출할 수 있도록 허용합니다.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    # REST API와 WebSocket 엔드포인트를 메인 앱에 연결합니다.
    app.include_router(api_router)
    app.include_router(websocket_router)

    @app.get("/")
    async def root():
        """서버 상태 확인용 루트 엔드포인트입니다."""
        services = app.state.services
        return {
            "message": "Welcome to Relay API",
            "active_connections": services.hub.active_connection_count() if services else 0,
        }

    return app


app = create_app()
