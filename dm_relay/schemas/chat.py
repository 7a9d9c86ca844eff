from datetime import datetime
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, Field

from dm_relay.schemas.user import DEFAULT_DISPLAY_NAME, ParticipantSnapshot
from dm_relay.utils.clock import as_utc


LOCAL_ID_PREFIX = "local-"


class ResolvedConversation(BaseModel):

    conversation_id: str
    other_user: ParticipantSnapshot


class StartConversationRequest(BaseModel):

    other_user_id: str = Field(min_length=1)


class SendMessageRequest(BaseModel):

    conversation_id: str
    to: str
    content: str
    client_message_id: Optional[str] = None


class MessageAck(BaseModel):

    message_id: str
    conversation_id: str
    created_at: datetime
    client_message_id: Optional[str] = None
    # False when the recipient hand-off could not be queued
    delivery_queued: bool = True


class ChatMessage(BaseModel):
    """One entry of the rendered conversation, confirmed or local echo."""

    id: str
    text: str
    sender_id: str
    created_at: datetime
    client_message_id: Optional[str] = None
    pending: bool = False

    @property
    def is_local(self) -> bool:
        return self.id.startswith(LOCAL_ID_PREFIX)

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "ChatMessage":
        return cls(
            id=str(doc["_id"]),
            text=doc["text"],
            sender_id=doc["sender_id"],
            created_at=as_utc(doc["created_at"]),
            client_message_id=doc.get("client_message_id"),
        )


class ConversationSummary(BaseModel):

    conversation_id: str
    members: List[str]
    last_message: str = ""
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
    other_user: Optional[ParticipantSnapshot] = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "ConversationSummary":
        with_user = doc.get("with_user") or None
        other = None
        if with_user:
            other = ParticipantSnapshot(
                id=with_user.get("id", ""),
                name=with_user.get("display_name") or DEFAULT_DISPLAY_NAME,
                image=with_user.get("photo_url"),
            )
        return cls(
            conversation_id=doc["conversation_id"],
            members=list(doc.get("members", [])),
            last_message=doc.get("last_message", ""),
            last_message_at=as_utc(doc.get("last_message_at")),
            unread_count=doc.get("unread_count", 0),
            other_user=other,
        )
