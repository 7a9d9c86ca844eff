import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Set

from dm_relay.config import get_settings


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


def mailbox_channel(owner_id: str, conversation_id: str) -> str:
    return f"mailbox:{owner_id}:{conversation_id}"


def intents_channel(recipient_id: str) -> str:
    return f"intents:{recipient_id}"


class LocalBus:
    """In-process fan-out used when no Redis is configured.

    Deliveries run as separate tasks so a subscriber may publish from inside
    its own handler without re-entering itself.
    """

    enabled = False

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[OnMessage]] = {}
        self._pending: Set[asyncio.Task] = set()

    async def publish(self, channel: str, message: str) -> None:
        for on_message in list(self._subscribers.get(channel, ())):
            task = asyncio.create_task(on_message(message))
            self._pending.add(task)
            task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Bus subscriber failed", exc_info=exc)

    async def subscribe(self, channel: str, on_message: OnMessage):
        self._subscribers.setdefault(channel, []).append(on_message)
        subscribers = self._subscribers

        class _Sub:
            async def run(self_inner):
                await asyncio.Future()

            async def cancel(self_inner):
                handlers = subscribers.get(channel, [])
                if on_message in handlers:
                    handlers.remove(on_message)
                if not handlers:
                    subscribers.pop(channel, None)

        return _Sub()

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def drain(self) -> None:
        """Wait until every delivery, including ones they trigger, has run."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().redis_url
    if not url:
        _bus = LocalBus()
        return _bus
    import redis.asyncio as redis

    class RedisBus:

        enabled = True

        def __init__(self, url: str) -> None:
            self._redis = redis.from_url(url)

        async def publish(self, channel: str, message: str) -> None:
            await self._redis.publish(channel, message)

        async def subscribe(self, channel: str, on_message: OnMessage):
            pubsub = self._redis.pubsub()
            await pubsub.subscribe(channel)

            class _Sub:
                _running = True

                async def run(self_inner):
                    while self_inner._running:
                        try:
                            msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                            if msg and msg.get("type") == "message":
                                data = msg.get("data")
                                if isinstance(data, bytes):
                                    data = data.decode("utf-8")
                                await on_message(data)
                        except asyncio.CancelledError:
                            raise
                        except Exception:
                            logger.warning("Redis subscription on %s failed, retrying", channel, exc_info=True)
                            await asyncio.sleep(0.5)

                async def cancel(self_inner):
                    self_inner._running = False
                    try:
                        await pubsub.unsubscribe(channel)
                        await pubsub.aclose()
                    except Exception:
                        logger.warning("Could not unsubscribe from %s", channel, exc_info=True)

            return _Sub()

        async def drain(self) -> None:
            return

    _bus = RedisBus(url)
    return _bus
