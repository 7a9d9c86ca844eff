import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dm_relay.config import get_settings
from dm_relay.database.connection import close_mongo_connection, connect_to_mongo, get_database
from dm_relay.repositories.conversation_repository import ConversationRepository
from dm_relay.repositories.intent_repository import IntentRepository
from dm_relay.repositories.message_repository import MessageRepository
from dm_relay.routers.chat import router as chat_router
from dm_relay.routers.conversations import router as conversations_router
from dm_relay.utils.realtime_bus import get_bus


_settings = get_settings()
logging.basicConfig(
    level=getattr(logging, _settings.log_level.upper(), logging.INFO),
    format="%(levelname)s - %(name)s - %(message)s",
)


async def ensure_indexes(db) -> None:
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    await IntentRepository(db).ensure_indexes()


@asynccontextmanager
async def lifespan(app: FastAPI):

    db = await connect_to_mongo()
    await ensure_indexes(db)
    await get_bus()
    try:
        yield
    finally:
        await close_mongo_connection()


app = FastAPI(title="Direct messaging relay", lifespan=lifespan)


app.include_router(conversations_router)
app.include_router(chat_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "Connected to MongoDB!", "collections": collections}
