from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import JSONResponse

from marketchat.services.message_service import MessageService, serialize_message
from marketchat.services.realtime_gateway import ChatNotifier
from marketchat.utils.dependencies import get_current_user, get_message_service, get_notifier


router = APIRouter(prefix="/messages", tags=["chat"])


async def _created(service: MessageService, notifier: ChatNotifier, sender_id: str, message, conversation) -> JSONResponse:
    recipient_id, recipient_role = service.recipient_of(conversation, sender_id)
    await notifier.new_message(message, conversation, recipient_id, recipient_role)
    return JSONResponse(status_code=status.HTTP_201_CREATED, content={"success": True, "data": serialize_message(message)})


@router.post("/voice")
async def send_voice_message(conversation_id: str = Form(...), audio: UploadFile = File(...), current_user: dict = Depends(get_current_user), service: MessageService = Depends(get_message_service), notifier: ChatNotifier = Depends(get_notifier)):
    # one byte past the limit is enough to reject an oversized upload
    data = await audio.read(service.max_audio_bytes + 1)
    message, conversation = await service.send_voice(current_user["id"], conversation_id, data, audio.content_type)
    return await _created(service, notifier, current_user["id"], message, conversation)


@router.post("")
async def send_message(payload: Dict[str, Any] = Body(...), current_user: dict = Depends(get_current_user), service: MessageService = Depends(get_message_service), notifier: ChatNotifier = Depends(get_notifier)):
    message, conversation = await service.send(current_user["id"], payload)
    return await _created(service, notifier, current_user["id"], message, conversation)


@router.get("/search/{conversation_id}")
async def search_messages(conversation_id: str, query: str = Query(""), current_user: dict = Depends(get_current_user), service: MessageService = Depends(get_message_service)):
    messages = await service.search(conversation_id, query, current_user["id"])
    return {"success": True, "data": [serialize_message(m) for m in messages]}


@router.get("/{conversation_id}")
async def list_messages(conversation_id: str, page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=200), current_user: dict = Depends(get_current_user), service: MessageService = Depends(get_message_service)):
    messages, pagination = await service.list_messages(conversation_id, current_user["id"], page=page, limit=limit)
    return {"success": True, "data": [serialize_message(m) for m in messages], "pagination": pagination}


@router.put("/{message_id}/read")
async def mark_message_read(message_id: str, current_user: dict = Depends(get_current_user), service: MessageService = Depends(get_message_service), notifier: ChatNotifier = Depends(get_notifier)):
    message, conversation, changed = await service.mark_read(message_id, current_user["id"])
    if changed:
        await notifier.messages_read(conversation["_id"], [message], current_user["id"])
    return {"success": True, "message": "Message marked as read"}


@router.delete("/{message_id}")
async def delete_message(message_id: str, current_user: dict = Depends(get_current_user), service: MessageService = Depends(get_message_service)):
    await service.soft_delete(message_id, current_user["id"])
    return {"success": True, "message": "Message deleted"}
