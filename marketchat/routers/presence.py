from fastapi import APIRouter, Depends

from marketchat.utils.dependencies import get_connection_manager
from marketchat.utils.websocket_manager import ConnectionManager


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}")
async def presence(user_id: str, manager: ConnectionManager = Depends(get_connection_manager)):
    """Online state from the in-process connection registry."""
    return {"success": True, "data": {"user_id": user_id, "online": manager.is_online(user_id)}}
