"""Awaitable facade over mongomock so repositories can run without a server.

Only the motor calls the repositories make are provided.
"""

from typing import Any, Dict, List, Optional

import mongomock


class AsyncMockCursor:

    def __init__(self, cursor) -> None:
        self._cursor = cursor

    def sort(self, *args, **kwargs) -> "AsyncMockCursor":
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def limit(self, count: int) -> "AsyncMockCursor":
        self._cursor = self._cursor.limit(count)
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        items = list(self._cursor)
        return items if length is None else items[:length]


class AsyncMockCollection:

    def __init__(self, collection) -> None:
        self._collection = collection

    def find(self, *args, **kwargs) -> AsyncMockCursor:
        return AsyncMockCursor(self._collection.find(*args, **kwargs))

    async def find_one(self, *args, **kwargs):
        return self._collection.find_one(*args, **kwargs)

    async def insert_one(self, document, *args, **kwargs):
        return self._collection.insert_one(document, *args, **kwargs)

    async def update_one(self, *args, **kwargs):
        return self._collection.update_one(*args, **kwargs)

    async def delete_one(self, *args, **kwargs):
        return self._collection.delete_one(*args, **kwargs)

    async def count_documents(self, *args, **kwargs) -> int:
        return self._collection.count_documents(*args, **kwargs)

    async def create_index(self, *args, **kwargs):
        return self._collection.create_index(*args, **kwargs)


class AsyncMockDatabase:

    def __init__(self, name: str = "dm_relay_test") -> None:
        self._db = mongomock.MongoClient(tz_aware=True)[name]
        self._collections: Dict[str, AsyncMockCollection] = {}

    def __getitem__(self, name: str) -> AsyncMockCollection:
        return self.get_collection(name)

    def get_collection(self, name: str) -> AsyncMockCollection:
        if name not in self._collections:
            self._collections[name] = AsyncMockCollection(self._db[name])
        return self._collections[name]

    async def list_collection_names(self) -> List[str]:
        return self._db.list_collection_names()

    def raw(self, name: str):
        """The underlying synchronous mongomock collection, for seeding."""
        return self._db[name]
