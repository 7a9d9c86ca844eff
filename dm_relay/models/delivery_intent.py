from datetime import datetime
from typing import Any, Literal, Optional, TypedDict


IntentType = Literal["NEW_MESSAGE"]


class DeliveryIntentDocument(TypedDict, total=False):
    _id: Any
    type: IntentType
    conversation_id: str
    sender_id: str
    recipient_id: str
    text: str
    # timestamp of the sender's copy
    created_at: datetime
    sender_message_id: str
    client_message_id: Optional[str]
