import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from marketchat.models.message import IMAGE_DEFAULT_CAPTION
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.product_repository import ProductRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.schemas.message import AudioMessageIn, MessageIn, parse_message_payload
from marketchat.services.conversation_service import (
    ConversationService,
    deleted_stub,
    other_role,
    resolve_viewpoint,
    summarize,
)
from marketchat.utils.errors import (
    NotFoundError,
    NotOwnerError,
    SelfReadError,
    UpstreamDependencyError,
    ValidationError,
)


logger = logging.getLogger(__name__)


def serialize_message(message: Dict[str, Any]) -> Dict[str, Any]:
    read_at = message.get("read_at")
    return {
        "id": str(message["_id"]),
        "conversation_id": str(message["conversation_id"]),
        "sender_id": message["sender_id"],
        "sender_name": message.get("sender_name"),
        "sender_avatar": message.get("sender_avatar"),
        "content": message.get("content", ""),
        "timestamp": message["created_at"].isoformat(),
        "read": bool(message.get("read")),
        "read_at": read_at.isoformat() if read_at else None,
        "type": message.get("type", "text"),
        "attachments": list(message.get("attachments") or []),
        "offer_details": message.get("offer_details"),
    }


class MessageService:

    def __init__(
        self,
        conversations: ConversationService,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        user_repo: UserRepository,
        product_repo: ProductRepository,
        media_store=None,
        max_audio_bytes: int = 10 * 1024 * 1024,
    ) -> None:
        self._conversations = conversations
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._product_repo = product_repo
        self._media_store = media_store
        self._max_audio_bytes = max_audio_bytes

    @property
    def conversations(self) -> ConversationService:
        return self._conversations

    @property
    def max_audio_bytes(self) -> int:
        return self._max_audio_bytes

    async def send(self, sender_id: str, payload: Union[MessageIn, Dict[str, Any]]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Persist a message, then fold it into the conversation summary.

        Returns (message, conversation) where conversation is the state after
        the summary update.
        """
        if isinstance(payload, dict):
            payload = parse_message_payload(payload)
        conversation, _ = await self._conversations.get_for_participant(payload.conversation_id, sender_id)

        content = payload.content
        offer_details = None
        if payload.type == "image" and not content:
            content = IMAGE_DEFAULT_CAPTION
        elif payload.type == "offer":
            offer_details = await self._offer_snapshot(payload.offer_details)
            content = content or f'Nouvelle offre pour "{offer_details["item_title"]}"'

        sender = await self._user_repo.get_user_by_id(sender_id) or {}
        message = await self._message_repo.save_message(
            conversation_id=conversation["_id"],
            sender_id=sender_id,
            sender_name=sender.get("name") or "",
            sender_avatar=sender.get("avatar"),
            content=content,
            type=payload.type,
            attachments=payload.attachments,
            offer_details=offer_details,
        )
        conversation = await self._conversations.append_message(conversation, message)
        logger.info("Message %s (%s) sent in conversation %s", message["_id"], payload.type, conversation["_id"])
        return message, conversation

    async def _offer_snapshot(self, details) -> Dict[str, Any]:
        if details.item_title:
            return details.model_dump()
        try:
            listing = await self._product_repo.get_listing(details.item_id)
        except Exception as exc:
            raise UpstreamDependencyError(f"Listing lookup failed: {exc}") from exc
        if not listing:
            raise NotFoundError("Listing not found")
        return {
            "item_id": listing["id"],
            "item_title": listing.get("title"),
            "item_image": listing.get("main_image"),
            "price": details.price if details.price is not None else listing.get("price"),
        }

    async def send_voice(self, sender_id: str, conversation_id: str, audio: bytes, content_type: Optional[str]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Upload the recording, then send it as an audio message.

        An upload failure aborts before anything is written. If persisting
        fails after the upload, the uploaded object is removed again.
        """
        if not audio:
            raise ValidationError("No audio file provided", field="audio")
        if not content_type or not content_type.startswith("audio/"):
            raise ValidationError("Only audio files are accepted", field="audio")
        if len(audio) > self._max_audio_bytes:
            raise ValidationError("Audio file is too large", field="audio")
        await self._conversations.get_for_participant(conversation_id, sender_id)
        if self._media_store is None:
            raise UpstreamDependencyError("Media store is not available")

        upload = await self._media_store.upload_audio(audio, public_id=f"voice_{conversation_id}_{int(time.time() * 1000)}")
        try:
            return await self.send(
                sender_id,
                AudioMessageIn(conversation_id=conversation_id, type="audio", content="", attachments=[upload.url]),
            )
        except Exception:
            await self._media_store.delete(upload.url)
            raise

    async def list_messages(self, conversation_id: str, user_id: str, page: int = 1, limit: int = 50) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
        if page < 1:
            raise ValidationError("page must be >= 1", field="page")
        if limit < 1:
            raise ValidationError("limit must be >= 1", field="limit")
        conversation, _ = await self._conversations.get_for_participant(conversation_id, user_id)
        messages, total = await self._message_repo.get_page(conversation["_id"], page=page, limit=limit)
        pagination = {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}
        return messages, pagination

    async def mark_read(self, message_id: str, reader_id: str) -> Tuple[Dict[str, Any], Dict[str, Any], bool]:
        """Read-receipt one message. Returns (message, conversation, changed);
        changed is False when the message had already been read."""
        message = await self._message_repo.get_by_id(message_id)
        if not message:
            raise NotFoundError("Message not found")
        conversation, role = await self._conversations.get_for_participant(message["conversation_id"], reader_id)
        if message["sender_id"] == reader_id:
            raise SelfReadError("You cannot mark your own message as read")

        updated = await self._message_repo.mark_read(message["_id"])
        if updated is None:
            return message, conversation, False
        await self._conversation_repo.mark_last_message_read(conversation["_id"], message["_id"])
        conversation = await self._conversation_repo.decrement_unread(conversation["_id"], role)
        return updated, conversation, True

    async def soft_delete(self, message_id: str, requester_id: str) -> Tuple[Dict[str, Any], bool]:
        """Blank a message in place. Deleting twice is a no-op."""
        message = await self._message_repo.get_by_id(message_id)
        if not message:
            raise NotFoundError("Message not found")
        if message["sender_id"] != requester_id:
            raise NotOwnerError("You can only delete your own messages")
        if message.get("type") == "deleted":
            return message, False

        deleted = await self._message_repo.soft_delete(message["_id"])
        if deleted is None:
            return await self._message_repo.get_by_id(message["_id"]), False

        conversation = await self._conversation_repo.get_by_id(message["conversation_id"])
        last = (conversation or {}).get("last_message") or {}
        if conversation and last.get("id") == message["_id"]:
            previous = await self._message_repo.latest_excluding(conversation["_id"], message["_id"])
            summary = summarize(previous) if previous else deleted_stub(requester_id, datetime.now(timezone.utc))
            await self._conversation_repo.replace_last_message(conversation["_id"], message["_id"], summary)
        logger.info("Message %s deleted by %s", message_id, requester_id)
        return deleted, True

    async def search(self, conversation_id: str, query_text: Optional[str], requester_id: str) -> List[Dict[str, Any]]:
        if not query_text or not query_text.strip():
            raise ValidationError("A search query is required", field="query")
        conversation, _ = await self._conversations.get_for_participant(conversation_id, requester_id)
        return await self._message_repo.search(conversation["_id"], query_text.strip())

    def recipient_of(self, conversation: Dict[str, Any], sender_id: str) -> Tuple[str, str]:
        """(recipient user id, recipient role) for a message from sender_id."""
        role = other_role(resolve_viewpoint(conversation, sender_id))
        return conversation["participants"][role], role
