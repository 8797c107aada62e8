from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select

from relay.core.security import create_access_token
from relay.db.database import build_engine, build_session_factory, init_db
from relay.db.models.user import User
from relay.services.container import build_services
from relay.sockets.chat_socket import ConnectionSession


class FakeWebSocket:
    """Stands in for a starlette WebSocket: records every frame sent to it."""

    def __init__(self, headers: Optional[dict] = None, query_params: Optional[dict] = None, fail: bool = False):
        self.headers = headers or {}
        self.query_params = query_params or {}
        self.fail = fail
        self.accepted = False
        self.close_code = None
        self.close_reason = None
        self.sent: List[dict] = []

    async def accept(self):
        self.accepted = True

    async def close(self, code: int = 1000, reason: Optional[str] = None):
        self.close_code = code
        self.close_reason = reason

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(data)

    def events(self) -> List[str]:
        return [frame["event"] for frame in self.sent]

    def payloads(self, event: str) -> List[dict]:
        return [frame["data"] for frame in self.sent if frame["event"] == event]


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def delete(self, key):
        self.ops.append(("delete", key, None))

    def hset(self, key, mapping):
        self.ops.append(("hset", key, mapping))

    def expire(self, key, ttl):
        self.ops.append(("expire", key, ttl))

    async def execute(self):
        if self.redis.fail:
            raise RedisConnectionError("redis is down")
        for op, key, arg in self.ops:
            if op == "delete":
                self.redis.hashes.pop(key, None)
            elif op == "hset":
                self.redis.hashes.setdefault(key, {}).update(arg)
            elif op == "expire":
                self.redis.ttls[key] = arg
        return [True] * len(self.ops)


class FakeRedis:
    """The handful of async redis-py calls the membership cache uses (decode_responses=True)."""

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = False
        self.reads = 0

    async def hgetall(self, key):
        if self.fail:
            raise RedisConnectionError("redis is down")
        self.reads += 1
        return dict(self.hashes.get(key, {}))

    async def delete(self, key):
        if self.fail:
            raise RedisConnectionError("redis is down")
        return 1 if self.hashes.pop(key, None) is not None else 0

    def pipeline(self, transaction: bool = True):
        return FakePipeline(self)


# --- Database ---

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}", echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def users(session_factory) -> Dict[str, int]:
    """alice, bob, carol, dave -> user id"""
    async with session_factory() as db:
        rows = [
            User(username="alice", full_name="Alice"),
            User(username="bob", full_name="Bob"),
            User(username="carol"),
            User(username="dave"),
        ]
        db.add_all(rows)
        await db.commit()
        return {user.username: user.id for user in rows}


@pytest.fixture
def count_rows(session_factory):
    async def _count(model, *where) -> int:
        async with session_factory() as db:
            result = await db.execute(select(func.count()).select_from(model).where(*where))
            return result.scalar_one()

    return _count


# --- Services ---

@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def services(session_factory):
    return build_services(session_factory)


@pytest_asyncio.fixture
async def private_chat(services, users):
    return await services.membership.create_chat(users["alice"], "private", None, [users["bob"]])


@pytest_asyncio.fixture
async def group_chat(services, users):
    return await services.membership.create_chat(
        users["alice"], "group", "Weekend", [users["bob"], users["carol"]]
    )


@pytest.fixture
def connect(services):
    """Opens an authenticated gateway session for a user: returns (session, websocket)."""

    async def _connect(user_id: int, fail: bool = False):
        token = create_access_token({"sub": str(user_id)})
        ws = FakeWebSocket(headers={"authorization": f"Bearer {token}"}, fail=fail)
        session = ConnectionSession(services, ws)
        assert await session.open()
        return session, ws

    return _connect


@pytest.fixture
def make_websocket():
    return FakeWebSocket
