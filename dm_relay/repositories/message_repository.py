from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING

from dm_relay.repositories.base import BusNotifyingRepository
from dm_relay.utils.clock import from_millis, to_millis
from dm_relay.utils.realtime_bus import mailbox_channel


class MessageRepository(BusNotifyingRepository):
    """Each member's private copy of a conversation's messages."""

    collection_name = "messages"

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("owner_id", ASCENDING), ("conversation_id", ASCENDING), ("created_at", ASCENDING)]
        )

    async def append(
        self,
        owner_id: str,
        conversation_id: str,
        sender_id: str,
        text: str,
        created_at: datetime,
        client_message_id: Optional[str] = None,
        message_id: Any = None,
    ) -> Dict[str, Any]:
        """Insert into ``owner_id``'s mailbox.

        Raises ``DuplicateKeyError`` when ``message_id`` was already used.
        """
        doc: Dict[str, Any] = {
            "owner_id": owner_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "text": text,
            "created_at": created_at,
        }
        if client_message_id:
            doc["client_message_id"] = client_message_id
        if message_id is not None:
            doc["_id"] = message_id
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        await self._notify(mailbox_channel(owner_id, conversation_id), "added")
        return doc

    async def exists(self, owner_id: str, message_id: Any) -> bool:
        found = await self.collection.find_one({"_id": message_id, "owner_id": owner_id}, {"_id": 1})
        return found is not None

    async def list_mailbox(self, owner_id: str, conversation_id: str) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"owner_id": owner_id, "conversation_id": conversation_id}).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        return await cursor.to_list(length=None)

    async def get_messages_by_conversation(
        self,
        owner_id: str,
        conversation_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        query: Dict[str, Any] = {"owner_id": owner_id, "conversation_id": conversation_id}
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # cursor format: ts_ms:oid
            ts_str, oid_hex = cursor.split(":", 1)
            ts = from_millis(int(ts_str))
            last_id = ObjectId(oid_hex) if ObjectId.is_valid(oid_hex) else oid_hex
            query["$or"] = [
                {"created_at": {"$lt": ts}},
                {"created_at": ts, "_id": {"$lt": last_id}},
            ]
        cur = self.collection.find(query).sort(sort).limit(limit)
        items = await cur.to_list(length=limit)
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = f"{to_millis(last['created_at'])}:{last['_id']}"
        # oldest first for rendering
        return list(reversed(items)), next_cursor
