import logging
from typing import List, Optional, Tuple

from pymongo.errors import PyMongoError

from dm_relay.repositories.conversation_repository import ConversationRepository
from dm_relay.repositories.intent_repository import IntentRepository
from dm_relay.repositories.message_repository import MessageRepository
from dm_relay.schemas.chat import ChatMessage, MessageAck
from dm_relay.services.conversation_service import conversation_id_for
from dm_relay.services.errors import DeliveryFailed, EmptyMessage, InvalidParticipants
from dm_relay.utils.clock import utcnow


logger = logging.getLogger(__name__)


class ChatService:
    """Writes outgoing messages to the sender's mailbox and queues the hand-off."""

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        intent_repo: IntentRepository,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._intent_repo = intent_repo

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        recipient_id: str,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> MessageAck:
        if not conversation_id:
            raise ValueError("conversation_id is required")
        text = (content or "").strip()
        if not text:
            raise EmptyMessage()
        if conversation_id_for(sender_id, recipient_id) != conversation_id:
            raise InvalidParticipants(f"{conversation_id} is not the conversation of {sender_id} and {recipient_id}")

        sent_at = utcnow()
        try:
            saved = await self._message_repo.append(
                owner_id=sender_id,
                conversation_id=conversation_id,
                sender_id=sender_id,
                text=text,
                created_at=sent_at,
                client_message_id=client_message_id,
            )
        except PyMongoError as exc:
            logger.error("Sending message in %s failed (sender side): %s", conversation_id, exc)
            raise DeliveryFailed(f"Could not store message in {conversation_id}") from exc

        try:
            await self._conversation_repo.record_outgoing(
                sender_id, conversation_id, [sender_id, recipient_id], text, sent_at
            )
        except PyMongoError as exc:
            # the stored message is the source of truth, metadata catches up on the next send
            logger.warning("Could not update %s's copy of %s: %s", sender_id, conversation_id, exc)

        message_id = str(saved["_id"])
        queued = True
        try:
            await self._intent_repo.enqueue(
                conversation_id=conversation_id,
                sender_id=sender_id,
                recipient_id=recipient_id,
                text=text,
                created_at=sent_at,
                sender_message_id=message_id,
                client_message_id=client_message_id,
            )
        except PyMongoError as exc:
            queued = False
            logger.warning("Failed to notify %s of message %s: %s", recipient_id, message_id, exc)

        return MessageAck(
            message_id=message_id,
            conversation_id=conversation_id,
            created_at=sent_at,
            client_message_id=client_message_id,
            delivery_queued=queued,
        )

    async def get_history(
        self,
        user_id: str,
        conversation_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[ChatMessage], Optional[str]]:
        items, next_cursor = await self._message_repo.get_messages_by_conversation(
            user_id, conversation_id, limit=limit, cursor=cursor
        )
        return [ChatMessage.from_document(it) for it in items], next_cursor
