import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from dm_relay.repositories.conversation_repository import ConversationRepository
from dm_relay.repositories.user_repository import UserRepository
from dm_relay.schemas.chat import ConversationSummary, ResolvedConversation
from dm_relay.schemas.user import ParticipantSnapshot
from dm_relay.services.errors import InvalidParticipants, ParticipantNotFound
from dm_relay.utils.clock import utcnow


logger = logging.getLogger(__name__)

CONVERSATION_ID_SEPARATOR = "__"


def conversation_id_for(user_a: str, user_b: str) -> str:
    """Both members compute the same id without talking to each other."""
    if not user_a or not user_b:
        raise InvalidParticipants("Both user ids are required")
    if user_a == user_b:
        raise InvalidParticipants("Cannot start a conversation with yourself")
    return CONVERSATION_ID_SEPARATOR.join(sorted([user_a, user_b]))


def other_member(conversation_id: str, user_id: str) -> str:
    members = conversation_id.split(CONVERSATION_ID_SEPARATOR)
    if len(members) != 2 or user_id not in members:
        raise InvalidParticipants(f"{user_id} is not a member of {conversation_id}")
    return members[1] if members[0] == user_id else members[0]


class ConversationService:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        user_repo: UserRepository,
        eager_peer_copy: bool = True,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._eager_peer_copy = eager_peer_copy

    async def resolve_or_create(self, self_id: str, other_id: str) -> ResolvedConversation:
        conversation_id = conversation_id_for(self_id, other_id)
        self_profile, other_profile = await asyncio.gather(
            self._user_repo.get_profile(self_id),
            self._user_repo.get_profile(other_id),
        )
        if self_profile is None:
            raise ParticipantNotFound(self_id)
        if other_profile is None:
            raise ParticipantNotFound(other_id)

        other_snapshot = ParticipantSnapshot.from_profile(other_id, other_profile)
        existing = await self._conversation_repo.get_copy(self_id, conversation_id)
        if existing is None:
            created = await self._conversation_repo.create_copy(
                owner_id=self_id,
                conversation_id=conversation_id,
                members=[self_id, other_id],
                with_user=other_snapshot.to_document(),
                created_at=utcnow(),
            )
            if created:
                logger.info("Created conversation %s for %s", conversation_id, self_id)

        if self._eager_peer_copy:
            await self._try_create_peer_copy(conversation_id, self_id, other_id, self_profile)

        return ResolvedConversation(conversation_id=conversation_id, other_user=other_snapshot)

    async def _try_create_peer_copy(self, conversation_id: str, self_id: str, other_id: str, self_profile: Dict[str, Any]) -> None:
        # Optimisation only: the notification processor creates the peer's copy on first delivery.
        try:
            await self._conversation_repo.create_copy(
                owner_id=other_id,
                conversation_id=conversation_id,
                members=[other_id, self_id],
                with_user=ParticipantSnapshot.from_profile(self_id, self_profile).to_document(),
                created_at=utcnow(),
            )
        except PyMongoError as exc:
            logger.warning("Could not create %s's copy of %s: %s", other_id, conversation_id, exc)

    async def list_conversations(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationSummary], Optional[str]]:
        items, next_cursor = await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)
        return [ConversationSummary.from_document(it) for it in items], next_cursor

    async def refresh_participant_snapshot(self, user_id: str, conversation_id: str) -> ParticipantSnapshot:
        other_id = other_member(conversation_id, user_id)
        profile = await self._user_repo.get_profile(other_id)
        if profile is None:
            raise ParticipantNotFound(other_id)
        snapshot = ParticipantSnapshot.from_profile(other_id, profile)
        await self._conversation_repo.update_with_user(user_id, conversation_id, snapshot.to_document())
        return snapshot
