import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from relay.core.config import PUSH_TIMEOUT_SECONDS
from relay.schemas.events import outbound
from relay.sockets.presence_registry import PresenceRegistry

logger = logging.getLogger(__name__)


class Connection:
    """One open socket. Frames are written one at a time."""

    def __init__(self, connection_id: str, user_id: int, websocket: WebSocket):
        self.connection_id = connection_id
        self.user_id = user_id
        self.websocket = websocket
        self._send_lock = asyncio.Lock()

    async def send(self, frame: dict):
        async with self._send_lock:
            await self.websocket.send_json(frame)


class ConnectionHub:
    """
    웹소켓 연결은 직렬화할 수 없으므로 서버 메모리에 유지합니다.
    connection_id -> Connection, plus chat rooms (chat_id -> connection ids)
    so room broadcasts only touch the connections that have the chat open.
    User -> connections routing is delegated to the PresenceRegistry.
    """

    def __init__(self, presence: PresenceRegistry, push_timeout: float = PUSH_TIMEOUT_SECONDS):
        self.presence = presence
        self.push_timeout = push_timeout
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[int, Set[str]] = {}
        self._lock = asyncio.Lock()

    # --- Connection Management ---

    async def add(self, connection: Connection):
        async with self._lock:
            self._connections[connection.connection_id] = connection

    async def remove(self, connection_id: str) -> Optional[Connection]:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            for chat_id in list(self._rooms):
                members = self._rooms[chat_id]
                members.discard(connection_id)
                if not members:
                    del self._rooms[chat_id]
            return connection

    def active_connection_count(self) -> int:
        return len(self._connections)

    # --- Rooms ---

    async def join_room(self, chat_id: int, connection_id: str):
        async with self._lock:
            if connection_id in self._connections:
                self._rooms.setdefault(chat_id, set()).add(connection_id)

    async def leave_room(self, chat_id: int, connection_id: str):
        async with self._lock:
            members = self._rooms.get(chat_id)
            if members is None:
                return
            members.discard(connection_id)
            if not members:
                del self._rooms[chat_id]

    def room_connection_ids(self, chat_id: int) -> List[str]:
        return list(self._rooms.get(chat_id, ()))

    # --- Sending ---

    async def send_to_connection(self, connection: Connection, event: str, data: Any) -> bool:
        """A push is successful once the frame was written to an open socket."""
        try:
            await asyncio.wait_for(connection.send(outbound(event, data)), timeout=self.push_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"[Hub] push '{event}' to {connection.connection_id} (user {connection.user_id}) timed out")
        except Exception as e:
            logger.warning(f"[Hub] push '{event}' to {connection.connection_id} (user {connection.user_id}) failed: {e}")
        return False

    async def _send_many(self, connection_ids: Iterable[str], event: str, data: Any) -> int:
        targets = [c for c in (self._connections.get(cid) for cid in connection_ids) if c is not None]
        if not targets:
            return 0
        results = await asyncio.gather(*(self.send_to_connection(c, event, data) for c in targets))
        return sum(1 for ok in results if ok)

    async def send_to_user(self, user_id: int, event: str, data: Any) -> int:
        """Returns how many of the user's connections accepted the frame."""
        return await self._send_many(self.presence.connection_ids(user_id), event, data)

    async def broadcast(self, event: str, data: Any, exclude_user_id: Optional[int] = None) -> int:
        ids = [cid for cid, c in self._connections.items() if c.user_id != exclude_user_id]
        return await self._send_many(ids, event, data)

    async def emit_to_room(self, chat_id: int, event: str, data: Any, exclude_connection_id: Optional[str] = None) -> int:
        ids = [cid for cid in self.room_connection_ids(chat_id) if cid != exclude_connection_id]
        return await self._send_many(ids, event, data)
