from typing import Any, Dict, Optional

import jwt
from fastapi import Depends
from fastapi.requests import HTTPConnection
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.database.connection import mongo_db_dependency
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.product_repository import ProductRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.services.conversation_service import ConversationService
from marketchat.services.message_service import MessageService
from marketchat.services.realtime_gateway import ChatNotifier
from marketchat.utils.errors import AuthenticationError
from marketchat.utils.security import decode_access_token
from marketchat.utils.websocket_manager import ConnectionManager


bearer_scheme = HTTPBearer(auto_error=False)


async def resolve_identity(db: AsyncIOMotorDatabase, token: Optional[str]) -> Dict[str, Any]:
    """Turn a bearer credential into {id, name, avatar}."""
    if not token:
        raise AuthenticationError("Missing bearer token")
    try:
        payload = decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc
    sub = payload.get("sub")
    if not sub:
        raise AuthenticationError("Token has no subject")
    user = await UserRepository(db).get_user_by_id(sub)
    if not user:
        raise AuthenticationError("User not found")
    return {"id": user["_id"], "name": user.get("name"), "avatar": user.get("avatar")}


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db=Depends(mongo_db_dependency),
) -> Dict[str, Any]:
    return await resolve_identity(db, credentials.credentials if credentials else None)


def get_connection_manager(request: HTTPConnection) -> ConnectionManager:
    return request.app.state.connections


def get_notifier(manager: ConnectionManager = Depends(get_connection_manager)) -> ChatNotifier:
    return ChatNotifier(manager)


def build_services(db: AsyncIOMotorDatabase, media_store=None, max_audio_bytes: int = 10 * 1024 * 1024) -> tuple[ConversationService, MessageService]:
    conversation_repo = ConversationRepository(db)
    message_repo = MessageRepository(db)
    user_repo = UserRepository(db)
    product_repo = ProductRepository(db)
    conversations = ConversationService(conversation_repo, message_repo, user_repo, product_repo)
    messages = MessageService(
        conversations,
        message_repo,
        conversation_repo,
        user_repo,
        product_repo,
        media_store=media_store,
        max_audio_bytes=max_audio_bytes,
    )
    return conversations, messages


def get_conversation_service(db=Depends(mongo_db_dependency)) -> ConversationService:
    conversations, _ = build_services(db)
    return conversations


def get_message_service(request: HTTPConnection, db=Depends(mongo_db_dependency)) -> MessageService:
    settings = request.app.state.settings
    _, messages = build_services(db, request.app.state.media_store, settings.max_audio_bytes)
    return messages
