from typing import Optional, TypedDict


class UserProfileDocument(TypedDict, total=False):

    _id: str
    display_name: Optional[str]
    username: Optional[str]
    photo_url: Optional[str]
