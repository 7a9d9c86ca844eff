from datetime import datetime
from typing import Any, List, Optional, TypedDict


class ParticipantSnapshotDocument(TypedDict, total=False):
    id: str
    display_name: str
    photo_url: Optional[str]


class ChatDocument(TypedDict, total=False):
    # "<owner_id>:<conversation_id>", one copy per member
    _id: str
    owner_id: str
    conversation_id: str
    members: List[str]
    created_at: datetime
    last_message_at: datetime
    last_message: str
    # only ever touched by the owner
    unread_count: int
    # cached profile of the other member
    with_user: ParticipantSnapshotDocument
    # recent intent ids already counted into unread_count
    applied_intents: List[Any]
