"""Process-wide settings loaded from environment variables.

Values are read once per interpreter via :func:`get_settings`.  A ``.env``
file in the working directory is honoured when present.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


def _truthy(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:

    mongodb_url: str
    mongodb_db: str
    redis_url: Optional[str]
    # write the peer's chat copy when a conversation is opened
    eager_peer_copy: bool
    # periodic re-query of pending delivery intents, 0 disables
    intent_refresh_seconds: float
    log_level: str


def _load_settings() -> Settings:
    load_dotenv()
    return Settings(
        mongodb_url=os.getenv("MONGODB_URL", "mongodb://localhost:27017"),
        mongodb_db=os.getenv("MONGODB_DB", "dm_relay"),
        redis_url=os.getenv("REDIS_URL") or None,
        eager_peer_copy=_truthy(os.getenv("EAGER_PEER_COPY"), default=True),
        intent_refresh_seconds=float(os.getenv("INTENT_REFRESH_SECONDS", "30")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return _load_settings()
