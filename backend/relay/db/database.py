from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from relay.core.config import DATABASE_ECHO, DATABASE_URL


class Base(DeclarativeBase):
    pass


def build_engine(url: str = DATABASE_URL, echo: bool = DATABASE_ECHO) -> AsyncEngine:
    return create_async_engine(url, echo=echo)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


async def init_db(bind: AsyncEngine = engine):
    """
    서버 시작 시 테이블을 생성합니다. (마이그레이션 도구는 범위 밖)
    """
    # Base.metadata 등록을 위해 모델 임포트
    from relay.db.models import chat, message, notification, user  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_utc_now():
    return datetime.now(timezone.utc).replace(tzinfo=None)
