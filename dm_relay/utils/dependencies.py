from fastapi import Header, HTTPException

from dm_relay.services.errors import DeliveryFailed, ParticipantNotFound
from dm_relay.utils.realtime_bus import get_bus


async def get_current_user_id(x_user_id: str = Header(default="")) -> str:
    # identity is established by the client app; this service trusts it
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


async def realtime_bus_dependency():
    return await get_bus()


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ParticipantNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, DeliveryFailed):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal error")
