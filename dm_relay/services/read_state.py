import logging

from pymongo.errors import PyMongoError

from dm_relay.repositories.conversation_repository import ConversationRepository


logger = logging.getLogger(__name__)


class ReadStateTracker:

    def __init__(self, conversation_repo: ConversationRepository) -> None:
        self._conversation_repo = conversation_repo

    async def mark_read(self, conversation_id: str, user_id: str) -> bool:
        """Zero the caller's unread counter; False when nothing could be updated."""
        if not conversation_id or not user_id:
            return False
        try:
            return await self._conversation_repo.reset_unread(user_id, conversation_id)
        except PyMongoError as exc:
            logger.info("Could not mark %s as read for %s: %s", conversation_id, user_id, exc)
            return False
