import json
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from dm_relay.database.connection import mongo_db_dependency
from dm_relay.routers.conversations import get_chat_service
from dm_relay.schemas.chat import ChatMessage, SendMessageRequest
from dm_relay.services.chat_service import ChatService
from dm_relay.services.errors import MessagingError
from dm_relay.services.session import MessagingSession
from dm_relay.utils.dependencies import get_current_user_id, http_error, realtime_bus_dependency


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])


@router.post("")
async def send_message(body: SendMessageRequest, user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    try:
        ack = await service.send_message(body.conversation_id, user_id, body.to, body.content, body.client_message_id)
    except (MessagingError, ValueError) as exc:
        raise http_error(exc)
    return {"ack": ack}


@router.websocket("/ws/{user_id}")
async def chat_socket(websocket: WebSocket, user_id: str, db = Depends(mongo_db_dependency), bus = Depends(realtime_bus_dependency)):
    await websocket.accept()
    session = MessagingSession.from_database(user_id, db, bus)
    await session.start()

    async def push(payload: Dict[str, Any]) -> None:
        await websocket.send_text(json.dumps(payload))

    def on_update_for(conversation_id: str):
        async def on_update(messages: List[ChatMessage]) -> None:
            await push({
                "type": "messages",
                "conversation_id": conversation_id,
                "items": [m.model_dump(mode="json") for m in messages],
            })
        return on_update

    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except ValueError:
                await push({"type": "error", "detail": "Invalid JSON"})
                continue
            # {type: "start"|"open"|"close"|"send"|"read", conversation_id?, to?, content?}
            kind = msg.get("type")
            conversation_id = msg.get("conversation_id") or ""
            try:
                if kind == "start":
                    resolved = await session.start_conversation(msg.get("to") or "")
                    await push({"type": "conversation", **resolved.model_dump(mode="json")})
                elif kind == "open":
                    await session.open_conversation(conversation_id, on_update_for(conversation_id))
                elif kind == "close":
                    await session.close_conversation(conversation_id)
                elif kind == "send":
                    ack = await session.send(conversation_id, msg.get("content") or "")
                    await push({"type": "ack", "ack": ack.model_dump(mode="json")})
                elif kind == "read":
                    await push({"type": "read", "conversation_id": conversation_id, "updated": await session.mark_read(conversation_id)})
                else:
                    await push({"type": "error", "detail": f"Unknown frame type {kind!r}"})
            except (MessagingError, ValueError) as exc:
                await push({"type": "error", "detail": str(exc), "error": type(exc).__name__})
    except WebSocketDisconnect:
        logger.info("Chat socket for %s disconnected", user_id)
    finally:
        await session.close()
