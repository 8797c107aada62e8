import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from relay.core.errors import AuthenticationError, InvalidPayloadError, RelayError
from relay.core.security import extract_websocket_token
from relay.schemas.events import (
    AcknowledgePayload,
    ChatRoomPayload,
    InboundFrame,
    MarkDeliveredPayload,
    MarkReadPayload,
    SendMessagePayload,
)
from relay.sockets.connection_hub import Connection

logger = logging.getLogger(__name__)

router = APIRouter()

# 인증 실패 시 accept() 전에 닫는 코드
AUTH_FAILED_CLOSE_CODE = 4401

# event -> error event reported back to the caller
ERROR_EVENTS = {
    "send_message": "message_error",
    "join_chat_room": "chat_error",
    "leave_chat_room": "chat_error",
    "mark_message_read": "chat_error",
    "mark_message_delivered": "chat_error",
    "typing_start": "chat_error",
    "typing_stop": "chat_error",
}


class ConnectionSession:
    """
    One authenticated socket: translates inbound frames into calls on the
    delivery core through a single dispatch table.
    """

    def __init__(self, services, websocket: WebSocket):
        self.services = services
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex
        self.user_id: Optional[int] = None
        self.connection: Optional[Connection] = None

        self.handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            "send_message": self.on_send_message,
            "join_chat_room": self.on_join_chat_room,
            "leave_chat_room": self.on_leave_chat_room,
            "mark_message_read": self.on_mark_message_read,
            "mark_message_delivered": self.on_mark_message_delivered,
            "typing_start": self.on_typing_start,
            "typing_stop": self.on_typing_stop,
            "acknowledge_notifications": self.on_acknowledge_notifications,
            "ping": self.on_ping,
        }

    # --- Lifecycle ---

    async def open(self) -> bool:
        """Verifies the token before accept(); a refused socket never touches presence."""
        token = extract_websocket_token(self.websocket)
        try:
            self.user_id = self.services.token_verifier.verify(token)
        except AuthenticationError as e:
            logger.warning(f"[Gateway] connection refused: {e.message}")
            await self.websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason=e.message)
            return False

        await self.websocket.accept()
        self.connection = Connection(self.connection_id, self.user_id, self.websocket)
        await self.services.hub.add(self.connection)
        await self.services.presence.connect(self.user_id, self.connection_id)

        await self.emit("current_online_users", self.services.presence.list_online())
        return True

    async def close(self):
        if self.connection is None:
            return
        await self.services.presence.disconnect(self.connection_id)
        await self.services.hub.remove(self.connection_id)
        self.connection = None

    async def emit(self, event: str, data: Any) -> bool:
        if self.connection is None:
            return False
        return await self.services.hub.send_to_connection(self.connection, event, data)

    # --- Dispatch ---

    async def dispatch(self, raw: Any):
        try:
            frame = InboundFrame.model_validate(raw)
        except ValidationError:
            await self.emit("error", {"error": InvalidPayloadError("Malformed frame").to_dict()})
            return

        handler = self.handlers.get(frame.event)
        if handler is None:
            await self.emit(
                "error",
                {"error": InvalidPayloadError(f"Unknown event: {frame.event}", details={"event": frame.event}).to_dict()},
            )
            return

        error_event = ERROR_EVENTS.get(frame.event, "error")
        try:
            await handler(frame.data)
        except ValidationError as e:
            errors = [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]
            error = InvalidPayloadError(details={"event": frame.event, "errors": errors})
            await self.emit(error_event, {"error": error.to_dict()})
        except RelayError as e:
            logger.info(f"[Gateway] {frame.event} from user {self.user_id} rejected: {e.code} {e.message}")
            await self.emit(error_event, {"error": e.to_dict()})
        except Exception as e:
            logger.exception(f"[Gateway] {frame.event} from user {self.user_id} failed: {e}")
            await self.emit("error", {"error": RelayError("Internal server error").to_dict()})

    # --- Handlers ---

    async def on_send_message(self, data: Dict[str, Any]):
        payload = SendMessagePayload.model_validate(data)
        await self.services.delivery.send(payload.chat_id, self.user_id, payload.content, payload.type)

    async def on_join_chat_room(self, data: Dict[str, Any]):
        payload = ChatRoomPayload.model_validate(data)
        await self.services.membership.require_member(payload.chat_id, self.user_id)
        await self.services.hub.join_room(payload.chat_id, self.connection_id)
        await self.services.hub.emit_to_room(
            payload.chat_id,
            "user_joined_chat",
            {"userId": self.user_id, "chatId": payload.chat_id},
            exclude_connection_id=self.connection_id,
        )

    async def on_leave_chat_room(self, data: Dict[str, Any]):
        payload = ChatRoomPayload.model_validate(data)
        await self.services.hub.leave_room(payload.chat_id, self.connection_id)
        await self.services.hub.emit_to_room(
            payload.chat_id, "user_left_chat", {"userId": self.user_id, "chatId": payload.chat_id}
        )

    async def on_mark_message_read(self, data: Dict[str, Any]):
        payload = MarkReadPayload.model_validate(data)
        created = await self.services.delivery.mark_read(self.user_id, payload.message_id)
        if created:
            message = await self.services.store.get(payload.message_id)
            await self.services.hub.emit_to_room(
                message.chat_id,
                "message_read_update",
                {"messageId": message.id, "chatId": message.chat_id, "readBy": self.user_id},
                exclude_connection_id=self.connection_id,
            )

    async def on_mark_message_delivered(self, data: Dict[str, Any]):
        payload = MarkDeliveredPayload.model_validate(data)
        await self.services.delivery.mark_delivered(self.user_id, payload.message_id)

    async def _typing(self, data: Dict[str, Any], event: str):
        payload = ChatRoomPayload.model_validate(data)
        await self.services.membership.require_member(payload.chat_id, self.user_id)
        await self.services.hub.emit_to_room(
            payload.chat_id,
            event,
            {"userId": self.user_id, "chatId": payload.chat_id},
            exclude_connection_id=self.connection_id,
        )

    async def on_typing_start(self, data: Dict[str, Any]):
        await self._typing(data, "user_typing")

    async def on_typing_stop(self, data: Dict[str, Any]):
        await self._typing(data, "user_stopped_typing")

    async def on_acknowledge_notifications(self, data: Dict[str, Any]):
        payload = AcknowledgePayload.model_validate(data)
        await self.services.delivery.acknowledge(self.user_id, payload.notification_ids)

    async def on_ping(self, data: Dict[str, Any]):
        await self.emit("pong", {})


@router.websocket("/ws/chat")
async def chat_endpoint(websocket: WebSocket):
    session = ConnectionSession(websocket.app.state.services, websocket)
    if not await session.open():
        return

    try:
        while True:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                await session.emit("error", {"error": InvalidPayloadError("Frame is not valid JSON").to_dict()})
                continue
            await session.dispatch(raw)
    except WebSocketDisconnect:
        logger.info(f"[Gateway] user {session.user_id} disconnected ({session.connection_id})")
    finally:
        await session.close()
