from datetime import datetime
from typing import Any, Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    # store-assigned on the sender's copy, the delivery intent id on the recipient's
    _id: Any
    owner_id: str
    conversation_id: str
    sender_id: str
    text: str
    created_at: datetime
    # client nonce echoed back for local echo matching
    client_message_id: Optional[str]
