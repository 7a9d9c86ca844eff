from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from dm_relay.utils.clock import from_millis, to_millis


APPLIED_INTENTS_KEPT = 200


def chat_key(owner_id: str, conversation_id: str) -> str:
    return f"{owner_id}:{conversation_id}"


class ConversationRepository:
    """Per-member conversation metadata copies ("chats")."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["chats"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("owner_id", ASCENDING), ("last_message_at", DESCENDING)])

    async def get_copy(self, owner_id: str, conversation_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"_id": chat_key(owner_id, conversation_id)})

    async def create_copy(
        self,
        owner_id: str,
        conversation_id: str,
        members: List[str],
        with_user: Dict[str, Any],
        created_at: datetime,
        last_message: str = "",
        unread_count: int = 0,
        applied_intents: Optional[List[Any]] = None,
    ) -> bool:
        """Insert the owner's copy; False when one already exists."""
        doc: Dict[str, Any] = {
            "_id": chat_key(owner_id, conversation_id),
            "owner_id": owner_id,
            "conversation_id": conversation_id,
            "members": list(members),
            "created_at": created_at,
            "last_message_at": created_at,
            "last_message": last_message,
            "unread_count": unread_count,
            "with_user": with_user,
            "applied_intents": list(applied_intents or []),
        }
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            return False
        return True

    async def record_outgoing(self, owner_id: str, conversation_id: str, members: List[str], text: str, sent_at: datetime) -> None:
        await self.collection.update_one(
            {"_id": chat_key(owner_id, conversation_id)},
            {
                "$max": {"last_message_at": sent_at},
                "$setOnInsert": {
                    "owner_id": owner_id,
                    "conversation_id": conversation_id,
                    "members": list(members),
                    "created_at": sent_at,
                    "last_message": text,
                    "unread_count": 0,
                    "applied_intents": [],
                },
            },
            upsert=True,
        )
        await self._update_preview(owner_id, conversation_id, text, sent_at)

    async def record_incoming(self, owner_id: str, conversation_id: str, intent_id: Any, text: str, received_at: datetime) -> bool:
        """Count one received message into the owner's copy.

        The increment is applied at most once per ``intent_id``. Returns False
        when there is no copy or the intent was already counted; the preview
        is brought up to date either way.
        """
        result = await self.collection.update_one(
            {"_id": chat_key(owner_id, conversation_id), "applied_intents": {"$ne": intent_id}},
            {
                "$max": {"last_message_at": received_at},
                "$inc": {"unread_count": 1},
                "$push": {"applied_intents": {"$each": [intent_id], "$slice": -APPLIED_INTENTS_KEPT}},
            },
        )
        await self._update_preview(owner_id, conversation_id, text, received_at)
        return result.matched_count > 0

    async def _update_preview(self, owner_id: str, conversation_id: str, text: str, at: datetime) -> None:
        # an older message never replaces a newer preview
        await self.collection.update_one(
            {"_id": chat_key(owner_id, conversation_id), "last_message_at": {"$lte": at}},
            {"$set": {"last_message": text}},
        )

    async def reset_unread(self, owner_id: str, conversation_id: str) -> bool:
        result = await self.collection.update_one(
            {"_id": chat_key(owner_id, conversation_id)},
            {"$set": {"unread_count": 0}},
        )
        return result.matched_count > 0

    async def update_with_user(self, owner_id: str, conversation_id: str, with_user: Dict[str, Any]) -> bool:
        result = await self.collection.update_one(
            {"_id": chat_key(owner_id, conversation_id)},
            {"$set": {"with_user": with_user}},
        )
        return result.matched_count > 0

    async def list_for_user(self, owner_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        query: Dict[str, Any] = {"owner_id": owner_id}
        sort = [("last_message_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # Cursor format: timestamp_ms:chat_key
            ts_str, last_id = cursor.split(":", 1)
            ts = from_millis(int(ts_str))
            query["$or"] = [
                {"last_message_at": {"$lt": ts}},
                {"last_message_at": ts, "_id": {"$lt": last_id}},
            ]

        cursor_db = self.collection.find(query).sort(sort).limit(limit)
        items = await cursor_db.to_list(length=limit)
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = f"{to_millis(last['last_message_at'])}:{last['_id']}"
        return items, next_cursor
