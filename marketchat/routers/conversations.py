from typing import Literal

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from marketchat.schemas.conversation import ConversationCreate
from marketchat.services.conversation_service import ConversationService
from marketchat.services.realtime_gateway import ChatNotifier
from marketchat.utils.dependencies import get_conversation_service, get_current_user, get_notifier


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(status_filter: Literal["active", "archived"] = Query("active", alias="status"), current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    items = await service.list_for_user(current_user["id"], status=status_filter)
    return {"success": True, "data": items}


@router.post("")
async def create_or_get_conversation(body: ConversationCreate, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    conversation, created = await service.create_or_get(current_user["id"], body.seller_id, body.product_id)
    data = await service.describe(conversation, current_user["id"])
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        content={"success": True, "data": data, "existing": not created},
    )


@router.get("/unread/count")
async def unread_count(current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    total = await service.total_unread(current_user["id"])
    return {"success": True, "data": {"unread_count": total}}


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return {"success": True, "data": await service.get(conversation_id, current_user["id"])}


@router.put("/{conversation_id}/read")
async def mark_conversation_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service), notifier: ChatNotifier = Depends(get_notifier)):
    conversation, flipped = await service.mark_read(conversation_id, current_user["id"])
    await notifier.messages_read(conversation["_id"], flipped, current_user["id"])
    return {"success": True, "message": "Conversation marked as read"}


@router.delete("/{conversation_id}")
async def archive_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    await service.archive(conversation_id, current_user["id"])
    return {"success": True, "message": "Conversation archived"}


@router.post("/{conversation_id}/unarchive")
async def unarchive_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    await service.unarchive(conversation_id, current_user["id"])
    return {"success": True, "message": "Conversation restored"}
