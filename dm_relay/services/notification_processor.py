"""Client-side stand-in for server fan-out.

Each logged-in session runs one :class:`NotificationProcessor`. It watches the
delivery intents addressed to its user, copies each message into the user's own
mailbox and deletes the intent. An intent that fails to apply stays queued and
is picked up again on the next snapshot (at-least-once). Replicated messages
reuse the intent id, so a second application is a no-op.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Set

from pymongo.errors import DuplicateKeyError, PyMongoError

from dm_relay.repositories.conversation_repository import ConversationRepository
from dm_relay.repositories.intent_repository import IntentRepository
from dm_relay.repositories.message_repository import MessageRepository
from dm_relay.repositories.user_repository import UserRepository
from dm_relay.schemas.user import ParticipantSnapshot
from dm_relay.utils.clock import utcnow
from dm_relay.utils.realtime_bus import intents_channel
from dm_relay.utils.snapshots import QueryListener, QuerySnapshot


logger = logging.getLogger(__name__)

REQUIRED_INTENT_FIELDS = ("conversation_id", "sender_id", "recipient_id", "text")


class NotificationProcessor:

    def __init__(
        self,
        user_id: str,
        intent_repo: IntentRepository,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        user_repo: UserRepository,
        bus,
        refresh_interval: Optional[float] = None,
    ) -> None:
        self.user_id = user_id
        self._intent_repo = intent_repo
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._bus = bus
        self._refresh_interval = refresh_interval
        self._in_flight: Set[Any] = set()
        self._listener: Optional[QueryListener] = None

    @property
    def running(self) -> bool:
        return self._listener is not None and self._listener.active

    async def start(self) -> None:
        if self._listener is not None:
            return
        self._listener = QueryListener(
            self._bus,
            intents_channel(self.user_id),
            fetch=lambda: self._intent_repo.list_pending(self.user_id),
            on_snapshot=self._on_snapshot,
            on_error=self._on_error,
            refresh_interval=self._refresh_interval,
        )
        try:
            await self._listener.start()
        except Exception:
            # the session keeps working, deliveries wait for the next login
            logger.exception("Could not start notification listener for %s", self.user_id)
            await self._listener.stop()
            self._listener = None

    async def stop(self) -> None:
        if self._listener is None:
            return
        listener, self._listener = self._listener, None
        await listener.stop()

    async def run_once(self) -> int:
        """Process everything currently pending; returns how many intents were retired."""
        pending = await self._intent_repo.list_pending(self.user_id)
        return await self._process(pending)

    async def _on_snapshot(self, snapshot: QuerySnapshot) -> None:
        await self._process(snapshot.documents)

    def _on_error(self, exc: Exception) -> None:
        logger.error("Notification listener for %s failed: %s", self.user_id, exc)

    async def _process(self, intents: Iterable[Dict[str, Any]]) -> int:
        retired = 0
        for intent in intents:
            intent_id = intent.get("_id")
            if intent_id in self._in_flight:
                continue
            self._in_flight.add(intent_id)
            try:
                try:
                    await self.apply_intent(intent)
                except (PyMongoError, ValueError) as exc:
                    logger.warning("Applying intent %s failed, will retry: %s", intent_id, exc)
                    continue
                if await self._retire(intent):
                    retired += 1
            finally:
                self._in_flight.discard(intent_id)
        return retired

    async def apply_intent(self, intent: Dict[str, Any]) -> bool:
        """Copy the intent's message into the recipient's mailbox.

        Both halves are keyed on the intent id: the replica message reuses it
        as ``_id`` and the metadata copy remembers it in ``applied_intents``.
        A retry after a partial failure therefore finishes whichever half is
        missing. Returns False when this intent had already been applied.
        """
        missing = [name for name in REQUIRED_INTENT_FIELDS if not intent.get(name)]
        if missing:
            raise ValueError(f"Intent {intent.get('_id')} is missing {', '.join(missing)}")

        intent_id = intent["_id"]
        recipient_id = intent["recipient_id"]
        sender_id = intent["sender_id"]
        conversation_id = intent["conversation_id"]
        text = intent["text"]
        sent_at = intent.get("created_at") or utcnow()

        stored = False
        if not await self._message_repo.exists(recipient_id, intent_id):
            try:
                await self._message_repo.append(
                    owner_id=recipient_id,
                    conversation_id=conversation_id,
                    sender_id=sender_id,
                    text=text,
                    created_at=sent_at,
                    client_message_id=intent.get("client_message_id"),
                    message_id=intent_id,
                )
                stored = True
            except DuplicateKeyError:
                # another device of the same user got there first
                pass

        counted = await self._record_metadata(intent_id, recipient_id, sender_id, conversation_id, text, sent_at)
        return stored or counted

    async def _record_metadata(self, intent_id, recipient_id: str, sender_id: str, conversation_id: str, text: str, sent_at) -> bool:
        repo = self._conversation_repo
        if await repo.record_incoming(recipient_id, conversation_id, intent_id, text, sent_at):
            return True
        if await repo.get_copy(recipient_id, conversation_id) is not None:
            return False
        profile = await self._user_repo.get_profile(sender_id)
        if profile is None:
            logger.warning("Sender %s of intent %s has no profile", sender_id, intent_id)
        created = await repo.create_copy(
            owner_id=recipient_id,
            conversation_id=conversation_id,
            members=[recipient_id, sender_id],
            with_user=ParticipantSnapshot.from_profile(sender_id, profile).to_document(),
            created_at=sent_at,
            last_message=text,
            unread_count=1,
            applied_intents=[intent_id],
        )
        if created:
            return True
        # copy appeared between the two calls
        return await repo.record_incoming(recipient_id, conversation_id, intent_id, text, sent_at)

    async def _retire(self, intent: Dict[str, Any]) -> bool:
        try:
            await self._intent_repo.retire(intent)
        except PyMongoError as exc:
            logger.info("Could not delete intent %s: %s", intent.get("_id"), exc)
            return False
        return True
