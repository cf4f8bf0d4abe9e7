import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from marketchat.database.connection import mongo_db_dependency
from marketchat.services.message_service import MessageService
from marketchat.services.realtime_gateway import RealtimeGateway, RealtimeSession
from marketchat.utils.dependencies import get_connection_manager, get_message_service, resolve_identity
from marketchat.utils.errors import AuthenticationError
from marketchat.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def _handshake_token(websocket: WebSocket):
    # ?token=... or Authorization: Bearer ...
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials
    return None


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, db=Depends(mongo_db_dependency), manager: ConnectionManager = Depends(get_connection_manager), messages: MessageService = Depends(get_message_service)):
    try:
        user = await resolve_identity(db, _handshake_token(websocket))
    except AuthenticationError as exc:
        logger.info("Realtime handshake rejected: %s", exc.message)
        await websocket.close(code=4401)
        return

    await websocket.accept()
    gateway = RealtimeGateway(manager, messages.conversations, messages)
    session = RealtimeSession(user, websocket)
    await gateway.connect(session)
    logger.info("Realtime session opened for %s", session.user_id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            # text and binary frames carry the same JSON envelope
            frame = message.get("text")
            if frame is None:
                frame = message.get("bytes")
            await gateway.handle(session, frame)
    except WebSocketDisconnect as exc:
        logger.info("Realtime session closed for %s (code %s)", session.user_id, exc.code)
    finally:
        await gateway.disconnect(session)
