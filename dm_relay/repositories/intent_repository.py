from typing import Any, Dict, List, Optional

from pymongo import ASCENDING

from dm_relay.repositories.base import BusNotifyingRepository
from dm_relay.utils.realtime_bus import intents_channel


NEW_MESSAGE = "NEW_MESSAGE"


class IntentRepository(BusNotifyingRepository):
    """Queue of pending cross-mailbox deliveries."""

    collection_name = "delivery_intents"

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("recipient_id", ASCENDING), ("created_at", ASCENDING)])

    async def enqueue(
        self,
        conversation_id: str,
        sender_id: str,
        recipient_id: str,
        text: str,
        created_at,
        sender_message_id: str,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "type": NEW_MESSAGE,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "text": text,
            "created_at": created_at,
            "sender_message_id": sender_message_id,
            "client_message_id": client_message_id,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        await self._notify(intents_channel(recipient_id), "added")
        return doc

    async def list_pending(self, recipient_id: str) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"type": NEW_MESSAGE, "recipient_id": recipient_id}).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        return await cursor.to_list(length=None)

    async def retire(self, intent: Dict[str, Any]) -> bool:
        result = await self.collection.delete_one({"_id": intent["_id"]})
        await self._notify(intents_channel(intent["recipient_id"]), "removed")
        return result.deleted_count > 0
