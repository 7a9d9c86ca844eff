import logging
from typing import Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from dm_relay.config import Settings, get_settings
from dm_relay.repositories.conversation_repository import ConversationRepository
from dm_relay.repositories.intent_repository import IntentRepository
from dm_relay.repositories.message_repository import MessageRepository
from dm_relay.repositories.user_repository import UserRepository
from dm_relay.schemas.chat import MessageAck, ResolvedConversation
from dm_relay.services.chat_service import ChatService
from dm_relay.services.conversation_service import ConversationService, other_member
from dm_relay.services.errors import EmptyMessage, MessagingError
from dm_relay.services.live_messages import LiveMessageSubscription, OnUpdate
from dm_relay.services.notification_processor import NotificationProcessor
from dm_relay.services.read_state import ReadStateTracker


logger = logging.getLogger(__name__)


class MessagingSession:
    """Everything one logged-in user needs, created at login and closed at logout."""

    def __init__(
        self,
        user_id: str,
        conversations: ConversationService,
        chat: ChatService,
        read_state: ReadStateTracker,
        processor: NotificationProcessor,
        message_repo: MessageRepository,
        bus,
    ) -> None:
        self.user_id = user_id
        self.conversations = conversations
        self.chat = chat
        self.read_state = read_state
        self.processor = processor
        self._message_repo = message_repo
        self._bus = bus
        self._subscriptions: Dict[str, LiveMessageSubscription] = {}
        self._closed = False

    @classmethod
    def from_database(cls, user_id: str, db: AsyncIOMotorDatabase, bus, settings: Optional[Settings] = None) -> "MessagingSession":
        settings = settings or get_settings()
        user_repo = UserRepository(db)
        conversation_repo = ConversationRepository(db)
        message_repo = MessageRepository(db, bus)
        intent_repo = IntentRepository(db, bus)
        processor = NotificationProcessor(
            user_id,
            intent_repo,
            message_repo,
            conversation_repo,
            user_repo,
            bus,
            refresh_interval=settings.intent_refresh_seconds or None,
        )
        return cls(
            user_id,
            ConversationService(conversation_repo, user_repo, eager_peer_copy=settings.eager_peer_copy),
            ChatService(message_repo, conversation_repo, intent_repo),
            ReadStateTracker(conversation_repo),
            processor,
            message_repo,
            bus,
        )

    async def start(self) -> "MessagingSession":
        await self.processor.start()
        return self

    async def __aenter__(self) -> "MessagingSession":
        return await self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start_conversation(self, other_user_id: str) -> ResolvedConversation:
        return await self.conversations.resolve_or_create(self.user_id, other_user_id)

    async def open_conversation(self, conversation_id: str, on_update: OnUpdate) -> LiveMessageSubscription:
        other_member(conversation_id, self.user_id)
        await self.close_conversation(conversation_id)
        subscription = LiveMessageSubscription(
            self.user_id, conversation_id, on_update, self._message_repo, self.read_state, self._bus
        )
        self._subscriptions[conversation_id] = subscription
        return await subscription.start()

    async def close_conversation(self, conversation_id: str) -> None:
        subscription = self._subscriptions.pop(conversation_id, None)
        if subscription is not None:
            await subscription.unsubscribe()

    async def send(self, conversation_id: str, content: str) -> MessageAck:
        if not content or not content.strip():
            raise EmptyMessage()
        recipient_id = other_member(conversation_id, self.user_id)
        subscription = self._subscriptions.get(conversation_id)
        echo = None
        if subscription is not None:
            echo = await subscription.add_local_echo(content, self.user_id)
        try:
            return await self.chat.send_message(
                conversation_id,
                self.user_id,
                recipient_id,
                content,
                client_message_id=echo.client_message_id if echo else None,
            )
        except MessagingError:
            if echo is not None:
                await subscription.discard_local_echo(echo.id)
            raise

    async def mark_read(self, conversation_id: str) -> bool:
        return await self.read_state.mark_read(conversation_id, self.user_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for conversation_id in list(self._subscriptions):
            await self.close_conversation(conversation_id)
        await self.processor.stop()
        logger.info("Closed messaging session for %s", self.user_id)
