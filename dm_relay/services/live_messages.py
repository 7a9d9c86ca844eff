import asyncio
import inspect
import logging
import uuid
from typing import Any, Callable, Iterable, List, Optional, Set

from dm_relay.repositories.message_repository import MessageRepository
from dm_relay.schemas.chat import LOCAL_ID_PREFIX, ChatMessage
from dm_relay.services.read_state import ReadStateTracker
from dm_relay.utils.clock import to_millis, utcnow
from dm_relay.utils.realtime_bus import mailbox_channel
from dm_relay.utils.snapshots import QueryListener, QuerySnapshot


logger = logging.getLogger(__name__)

OnUpdate = Callable[[List[ChatMessage]], Any]


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{to_millis(utcnow())}-{uuid.uuid4().hex[:8]}"


class MessageReconciler:
    """Ordered message list merging local echoes with confirmed records."""

    def __init__(self) -> None:
        self.messages: List[ChatMessage] = []
        self._seen_ids: Set[str] = set()

    def add_local_echo(self, text: str, sender_id: str, client_message_id: Optional[str] = None) -> ChatMessage:
        echo = ChatMessage(
            id=new_local_id(),
            text=text.strip(),
            sender_id=sender_id,
            created_at=utcnow(),
            client_message_id=client_message_id or uuid.uuid4().hex,
            pending=True,
        )
        self._seen_ids.add(echo.id)
        self.messages = self.messages + [echo]
        return echo

    def discard_local_echo(self, local_id: str) -> bool:
        remaining = [m for m in self.messages if not (m.pending and m.id == local_id)]
        if len(remaining) == len(self.messages):
            return False
        self.messages = remaining
        return True

    def reconcile(self, confirmed: Iterable[ChatMessage]) -> bool:
        """Fold confirmed records into the list; True when the list changed."""
        updated = list(self.messages)
        changed = False
        for message in confirmed:
            if message.id in self._seen_ids:
                continue
            self._seen_ids.add(message.id)
            echo_index = self._find_echo(updated, message)
            if echo_index is None:
                updated.append(message)
            else:
                updated[echo_index] = message
            changed = True
        if not changed:
            return False
        # stable, so equal timestamps keep store order
        updated.sort(key=lambda m: m.created_at)
        self.messages = updated
        return True

    @staticmethod
    def _find_echo(messages: List[ChatMessage], confirmed: ChatMessage) -> Optional[int]:
        for index, candidate in enumerate(messages):
            if not candidate.pending:
                continue
            if candidate.client_message_id and confirmed.client_message_id:
                if candidate.client_message_id == confirmed.client_message_id:
                    return index
                continue
            if candidate.text == confirmed.text and candidate.sender_id == confirmed.sender_id:
                return index
        return None


class LiveMessageSubscription:
    """Real-time, ordered view of one conversation in the caller's mailbox."""

    def __init__(
        self,
        user_id: str,
        conversation_id: str,
        on_update: OnUpdate,
        message_repo: MessageRepository,
        read_state: ReadStateTracker,
        bus,
    ) -> None:
        self.user_id = user_id
        self.conversation_id = conversation_id
        self._on_update = on_update
        self._message_repo = message_repo
        self._read_state = read_state
        self._reconciler = MessageReconciler()
        self._listener = QueryListener(
            bus,
            mailbox_channel(user_id, conversation_id),
            fetch=lambda: message_repo.list_mailbox(user_id, conversation_id),
            on_snapshot=self._on_snapshot,
            on_error=self._on_error,
        )
        self._read_tasks: Set[asyncio.Task] = set()
        self._initial_snapshot_seen = False
        self._closed = False

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._reconciler.messages)

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> "LiveMessageSubscription":
        await self._listener.start()
        return self

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._listener.stop()
        await self.wait_read_state()

    async def add_local_echo(self, text: str, sender_id: str, client_message_id: Optional[str] = None) -> ChatMessage:
        echo = self._reconciler.add_local_echo(text, sender_id, client_message_id)
        await self._emit()
        return echo

    async def discard_local_echo(self, local_id: str) -> bool:
        if not self._reconciler.discard_local_echo(local_id):
            return False
        await self._emit()
        return True

    async def refresh(self) -> None:
        await self._listener.refresh()

    async def _on_snapshot(self, snapshot: QuerySnapshot) -> None:
        if self._closed:
            return
        changed = self._reconciler.reconcile(ChatMessage.from_document(doc) for doc in snapshot.documents)
        first = not self._initial_snapshot_seen
        self._initial_snapshot_seen = True
        if changed:
            await self._emit()
        if changed or first:
            self._schedule_mark_read()

    def _on_error(self, exc: Exception) -> None:
        logger.error("Message listener for %s/%s failed: %s", self.user_id, self.conversation_id, exc)

    async def _emit(self) -> None:
        if self._closed:
            return
        result = self._on_update(self.messages)
        if inspect.isawaitable(result):
            await result

    def _schedule_mark_read(self) -> None:
        task = asyncio.create_task(self._read_state.mark_read(self.conversation_id, self.user_id))
        self._read_tasks.add(task)
        task.add_done_callback(self._read_done)

    def _read_done(self, task: asyncio.Task) -> None:
        self._read_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Marking %s as read failed", self.conversation_id, exc_info=task.exception())

    async def wait_read_state(self) -> None:
        if self._read_tasks:
            await asyncio.gather(*list(self._read_tasks), return_exceptions=True)


async def subscribe(
    user_id: str,
    conversation_id: str,
    on_update: OnUpdate,
    message_repo: MessageRepository,
    read_state: ReadStateTracker,
    bus,
) -> LiveMessageSubscription:
    subscription = LiveMessageSubscription(user_id, conversation_id, on_update, message_repo, read_state, bus)
    return await subscription.start()
