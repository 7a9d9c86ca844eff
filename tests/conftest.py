from types import SimpleNamespace

import pytest

from dm_relay.config import Settings
from dm_relay.repositories.conversation_repository import ConversationRepository
from dm_relay.repositories.intent_repository import IntentRepository
from dm_relay.repositories.message_repository import MessageRepository
from dm_relay.repositories.user_repository import UserRepository
from dm_relay.services.chat_service import ChatService
from dm_relay.services.conversation_service import ConversationService
from dm_relay.services.notification_processor import NotificationProcessor
from dm_relay.services.read_state import ReadStateTracker
from dm_relay.services.session import MessagingSession
from dm_relay.utils.realtime_bus import LocalBus
from tests.mongo_double import AsyncMockDatabase


ALICE = "alice"
BOB = "bob"
CAROL = "carol"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        mongodb_url="mongodb://unused",
        mongodb_db="dm_relay_test",
        redis_url=None,
        eager_peer_copy=True,
        intent_refresh_seconds=0,
        log_level="DEBUG",
    )


@pytest.fixture
def db() -> AsyncMockDatabase:
    return AsyncMockDatabase()


@pytest.fixture
def bus() -> LocalBus:
    return LocalBus()


@pytest.fixture
async def repos(db, bus):
    users = UserRepository(db)
    await users.upsert_profile(ALICE, display_name="Alice", photo_url="https://img.example/alice.png")
    await users.upsert_profile(BOB, username="bobby")
    await users.upsert_profile(CAROL)
    return SimpleNamespace(
        users=users,
        conversations=ConversationRepository(db),
        messages=MessageRepository(db, bus),
        intents=IntentRepository(db, bus),
    )


@pytest.fixture
def conversation_service(repos) -> ConversationService:
    return ConversationService(repos.conversations, repos.users)


@pytest.fixture
def chat_service(repos) -> ChatService:
    return ChatService(repos.messages, repos.conversations, repos.intents)


@pytest.fixture
def read_state(repos) -> ReadStateTracker:
    return ReadStateTracker(repos.conversations)


@pytest.fixture
def make_processor(repos, bus):
    def _make(user_id: str) -> NotificationProcessor:
        return NotificationProcessor(user_id, repos.intents, repos.messages, repos.conversations, repos.users, bus)
    return _make


@pytest.fixture
async def make_session(repos, db, bus, settings):
    sessions = []

    async def _make(user_id: str) -> MessagingSession:
        session = await MessagingSession.from_database(user_id, db, bus, settings).start()
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        await session.close()
    await bus.drain()
