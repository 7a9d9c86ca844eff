import logging

from motor.motor_asyncio import AsyncIOMotorDatabase


logger = logging.getLogger(__name__)


class BusNotifyingRepository:
    """Repository whose writes announce themselves on the realtime bus."""

    collection_name: str = ""

    def __init__(self, db: AsyncIOMotorDatabase, bus=None) -> None:
        self._db = db
        self._bus = bus

    @property
    def collection(self):
        return self._db[self.collection_name]

    async def _notify(self, channel: str, change: str = "changed") -> None:
        if self._bus is None:
            return
        try:
            await self._bus.publish(channel, change)
        except Exception:
            # the write itself is durable; listeners catch up on their next refresh
            logger.warning("Could not publish change notice on %s", channel, exc_info=True)
