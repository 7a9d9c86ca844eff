from typing import Optional

from fastapi import APIRouter, Depends, Query

from dm_relay.config import get_settings
from dm_relay.database.connection import mongo_db_dependency
from dm_relay.repositories.conversation_repository import ConversationRepository
from dm_relay.repositories.intent_repository import IntentRepository
from dm_relay.repositories.message_repository import MessageRepository
from dm_relay.repositories.user_repository import UserRepository
from dm_relay.schemas.chat import StartConversationRequest
from dm_relay.services.chat_service import ChatService
from dm_relay.services.conversation_service import ConversationService, other_member
from dm_relay.services.errors import MessagingError
from dm_relay.services.read_state import ReadStateTracker
from dm_relay.utils.dependencies import get_current_user_id, http_error, realtime_bus_dependency


router = APIRouter(prefix="/conversations", tags=["chat"])


def get_conversation_service(db = Depends(mongo_db_dependency)) -> ConversationService:
    return ConversationService(
        ConversationRepository(db),
        UserRepository(db),
        eager_peer_copy=get_settings().eager_peer_copy,
    )


def get_chat_service(db = Depends(mongo_db_dependency), bus = Depends(realtime_bus_dependency)) -> ChatService:
    return ChatService(MessageRepository(db, bus), ConversationRepository(db), IntentRepository(db, bus))


def get_read_state(db = Depends(mongo_db_dependency)) -> ReadStateTracker:
    return ReadStateTracker(ConversationRepository(db))


@router.post("")
async def start_conversation(body: StartConversationRequest, user_id: str = Depends(get_current_user_id), service: ConversationService = Depends(get_conversation_service)):
    try:
        resolved = await service.resolve_or_create(user_id, body.other_user_id)
    except MessagingError as exc:
        raise http_error(exc)
    return resolved


@router.get("")
async def list_conversations(limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, user_id: str = Depends(get_current_user_id), service: ConversationService = Depends(get_conversation_service)):
    try:
        items, next_cursor = await service.list_conversations(user_id, limit=limit, cursor=cursor)
    except ValueError as exc:
        raise http_error(exc)
    return {"items": items, "next_cursor": next_cursor}


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, limit: int = Query(50, ge=1, le=200), cursor: Optional[str] = None, user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    try:
        other_member(conversation_id, user_id)
        messages, next_cursor = await service.get_history(user_id, conversation_id, limit=limit, cursor=cursor)
    except ValueError as exc:
        raise http_error(exc)
    return {"items": messages, "next_cursor": next_cursor}


@router.post("/{conversation_id}/refresh_participant")
async def refresh_participant(conversation_id: str, user_id: str = Depends(get_current_user_id), service: ConversationService = Depends(get_conversation_service)):
    try:
        snapshot = await service.refresh_participant_snapshot(user_id, conversation_id)
    except MessagingError as exc:
        raise http_error(exc)
    return snapshot


@router.post("/{conversation_id}/read")
async def mark_read(conversation_id: str, user_id: str = Depends(get_current_user_id), tracker: ReadStateTracker = Depends(get_read_state)):
    return {"updated": await tracker.mark_read(conversation_id, user_id)}
