from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_profile(self, user_id: str) -> Optional[dict]:
        if not user_id:
            return None
        return await self._collection.find_one({"_id": user_id})

    async def upsert_profile(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        username: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> dict:
        doc = {"display_name": display_name, "username": username, "photo_url": photo_url}
        await self._collection.update_one({"_id": user_id}, {"$set": doc}, upsert=True)
        return {"_id": user_id, **doc}
