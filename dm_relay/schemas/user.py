from typing import Any, Mapping, Optional

from pydantic import BaseModel


DEFAULT_DISPLAY_NAME = "User"


class ParticipantSnapshot(BaseModel):

    id: str
    name: str = DEFAULT_DISPLAY_NAME
    image: Optional[str] = None

    @classmethod
    def from_profile(cls, user_id: str, profile: Optional[Mapping[str, Any]]) -> "ParticipantSnapshot":
        profile = profile or {}
        name = profile.get("display_name") or profile.get("username") or DEFAULT_DISPLAY_NAME
        return cls(id=user_id, name=name, image=profile.get("photo_url"))

    def to_document(self) -> dict:
        return {"id": self.id, "display_name": self.name, "photo_url": self.image}
