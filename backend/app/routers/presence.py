from fastapi import APIRouter, Depends

from app.services.presence_service import PresenceRegistry
from app.utils.dependencies import get_current_user, get_registry


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}")
async def presence(user_id: str, current_user: dict = Depends(get_current_user), registry: PresenceRegistry = Depends(get_registry)):
    """
    Online status as seen by this server process.
    """
    return {"userId": user_id, "online": registry.is_online(user_id)}
