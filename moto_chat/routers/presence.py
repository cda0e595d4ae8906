from fastapi import APIRouter, Depends

from moto_chat.schemas.user import Principal
from moto_chat.utils.dependencies import get_current_user
from moto_chat.utils.websocket_manager import get_connection_manager


router = APIRouter(prefix="/presence", tags=["presence"])


@router.get("/{user_id}")
async def presence(user_id: str, current_user: Principal = Depends(get_current_user)):
    """Online status as seen by this process's connection registry."""
    manager = get_connection_manager()
    return {"user_id": user_id, "online": manager.is_online(user_id), "connections": manager.connection_count(user_id)}
