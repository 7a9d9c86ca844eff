"""Standing query subscriptions built on the realtime bus.

A :class:`QueryListener` re-runs a query whenever a change notice arrives on
its channel (or on a timer) and hands the full result, together with the
added/modified/removed changes since the previous run, to a callback.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional


logger = logging.getLogger(__name__)

ChangeType = Literal["added", "modified", "removed"]


@dataclass
class DocumentChange:

    type: ChangeType
    document: Dict[str, Any]


@dataclass
class QuerySnapshot:

    documents: List[Dict[str, Any]]
    changes: List[DocumentChange] = field(default_factory=list)


Fetch = Callable[[], Awaitable[List[Dict[str, Any]]]]
OnSnapshot = Callable[[QuerySnapshot], Any]
OnError = Callable[[Exception], Any]


def diff_documents(previous: Dict[Any, Dict[str, Any]], documents: List[Dict[str, Any]]) -> List[DocumentChange]:
    changes: List[DocumentChange] = []
    seen = set()
    for doc in documents:
        key = doc.get("_id")
        seen.add(key)
        before = previous.get(key)
        if before is None:
            changes.append(DocumentChange("added", doc))
        elif before != doc:
            changes.append(DocumentChange("modified", doc))
    for key, doc in previous.items():
        if key not in seen:
            changes.append(DocumentChange("removed", doc))
    return changes


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class QueryListener:

    def __init__(
        self,
        bus,
        channel: str,
        fetch: Fetch,
        on_snapshot: OnSnapshot,
        on_error: Optional[OnError] = None,
        refresh_interval: Optional[float] = None,
    ) -> None:
        self._bus = bus
        self._channel = channel
        self._fetch = fetch
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._refresh_interval = refresh_interval
        self._previous: Dict[Any, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._subscriber = None
        self._tasks: List[asyncio.Task] = []
        self._started = False
        self._stopped = False

    @property
    def active(self) -> bool:
        return self._started and not self._stopped

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._subscriber = await self._bus.subscribe(self._channel, self._on_notice)
        self._tasks.append(asyncio.create_task(self._subscriber.run()))
        if self._refresh_interval:
            self._tasks.append(asyncio.create_task(self._poll()))
        await self.refresh()

    async def _on_notice(self, _message: str) -> None:
        await self.refresh()

    async def _poll(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self._refresh_interval)
            await self.refresh()

    async def refresh(self) -> None:
        async with self._lock:
            if self._stopped:
                return
            try:
                documents = await self._fetch()
            except Exception as exc:
                await self._report(exc)
                return
            changes = diff_documents(self._previous, documents)
            self._previous = {doc.get("_id"): doc for doc in documents}
            try:
                await _maybe_await(self._on_snapshot(QuerySnapshot(documents, changes)))
            except Exception:
                logger.exception("Snapshot handler for %s failed", self._channel)

    async def _report(self, exc: Exception) -> None:
        if self._on_error is None:
            logger.error("Query on %s failed: %s", self._channel, exc)
            return
        try:
            await _maybe_await(self._on_error(exc))
        except Exception:
            logger.exception("Error handler for %s failed", self._channel)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._subscriber is not None:
            await self._subscriber.cancel()
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
