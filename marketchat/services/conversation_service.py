import logging
from typing import Any, Dict, List, Optional, Tuple

from marketchat.models.conversation import LastMessage, ParticipantRole
from marketchat.models.message import DELETED_PLACEHOLDER, VOICE_PREVIEW
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.product_repository import ProductRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.utils.errors import (
    NotFoundError,
    NotParticipantError,
    SelfConversationError,
    ValidationError,
)


logger = logging.getLogger(__name__)

WELCOME_TEMPLATE = (
    'Bonjour ! Je vois que vous êtes intéressé(e) par "{title}". '
    "N'hésitez pas à me poser vos questions ! 😊"
)


def resolve_viewpoint(conversation: Dict[str, Any], user_id: str) -> ParticipantRole:
    participants = conversation["participants"]
    if participants["buyer"] == user_id:
        return "buyer"
    if participants["seller"] == user_id:
        return "seller"
    raise NotParticipantError("You are not a participant of this conversation")


def other_role(role: ParticipantRole) -> ParticipantRole:
    return "seller" if role == "buyer" else "buyer"


def summarize(message: Dict[str, Any]) -> LastMessage:
    content = message.get("content") or ""
    if message.get("type") == "audio" and not content:
        content = VOICE_PREVIEW
    return {
        "id": message["_id"],
        "content": content,
        "sender_id": message["sender_id"],
        "sender_name": message.get("sender_name", ""),
        "timestamp": message["created_at"],
        "read": bool(message.get("read")),
        "type": message.get("type", "text"),
    }


def deleted_stub(requester_id: str, now) -> LastMessage:
    return {
        "content": DELETED_PLACEHOLDER,
        "sender_id": requester_id,
        "sender_name": "",
        "timestamp": now,
        "read": True,
        "type": "deleted",
    }


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_summary(last: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not last:
        return None
    return {
        "id": str(last["id"]) if last.get("id") is not None else None,
        "content": last.get("content"),
        "sender_id": last.get("sender_id"),
        "sender_name": last.get("sender_name"),
        "timestamp": _iso(last.get("timestamp")),
        "read": bool(last.get("read")),
        "type": last.get("type"),
    }


class ConversationService:
    """Owns the summary state of conversations: participants, item snapshot,
    last message, per-role unread counters and archival status.

    Every public operation resolves the caller's viewpoint first; a caller
    that is neither buyer nor seller gets NotParticipantError.
    """

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        user_repo: UserRepository,
        product_repo: ProductRepository,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._user_repo = user_repo
        self._product_repo = product_repo

    async def get_for_participant(self, conversation_id: str, user_id: str) -> Tuple[Dict[str, Any], str]:
        conversation = await self._conversation_repo.get_by_id(conversation_id)
        if not conversation:
            raise NotFoundError("Conversation not found")
        return conversation, resolve_viewpoint(conversation, user_id)

    async def create_or_get(self, buyer_id: str, seller_id: Optional[str], product_id: Optional[str] = None) -> Tuple[Dict[str, Any], bool]:
        """Return (conversation, created) for the buyer/seller pair.

        With a product id, conversations are distinct per listing. A newly
        created conversation around a listing whose title resolves gets a
        welcome message from the seller.
        """
        if not seller_id:
            raise ValidationError("Seller is required", field="seller_id")
        if buyer_id == seller_id:
            raise SelfConversationError("You cannot start a conversation with yourself")

        if product_id:
            existing = await self._conversation_repo.find_for_pair(buyer_id, seller_id, product_id)
            if existing:
                return existing, False

        seller = await self._user_repo.get_user_by_id(seller_id)
        if not seller:
            raise NotFoundError("Seller not found")

        item = await self._snapshot_item(product_id) if product_id else None
        if not item:
            existing = await self._conversation_repo.find_for_pair(buyer_id, seller_id)
            if existing:
                return existing, False

        conversation, created = await self._conversation_repo.create(buyer_id, seller_id, item)
        if not created:
            return conversation, False
        logger.info("Conversation %s created between buyer %s and seller %s", conversation["_id"], buyer_id, seller_id)

        if item and item.get("title"):
            welcome = await self._message_repo.save_message(
                conversation_id=conversation["_id"],
                sender_id=seller_id,
                sender_name=seller.get("name") or "",
                sender_avatar=seller.get("avatar"),
                content=WELCOME_TEMPLATE.format(title=item["title"]),
                type="text",
            )
            conversation = await self.append_message(conversation, welcome)
        return conversation, True

    async def _snapshot_item(self, product_id: str) -> Optional[Dict[str, Any]]:
        try:
            listing = await self._product_repo.get_listing(product_id)
        except Exception as exc:
            logger.warning("Listing %s lookup failed, creating conversation without item: %s", product_id, exc)
            return None
        if not listing:
            return None
        return {
            "id": listing["id"],
            "title": listing.get("title"),
            "image": listing.get("main_image"),
            "price": listing.get("price"),
        }

    async def append_message(self, conversation: Dict[str, Any], message: Dict[str, Any]) -> Dict[str, Any]:
        """Reflect a persisted message in the summary. Call only after the
        message insert succeeded."""
        sender_role = resolve_viewpoint(conversation, message["sender_id"])
        updated = await self._conversation_repo.apply_new_message(
            conversation["_id"], summarize(message), other_role(sender_role)
        )
        return updated or conversation

    async def mark_read(self, conversation_id: str, user_id: str) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        """Mark every message from the other side read and reset the caller's
        counter. Returns the conversation and the messages that flipped."""
        conversation, role = await self.get_for_participant(conversation_id, user_id)
        other_id = conversation["participants"][other_role(role)]
        flipped = await self._message_repo.mark_read_from_sender(conversation["_id"], other_id)
        await self._conversation_repo.mark_last_message_read_from(conversation["_id"], other_id)
        # recount rather than zero so a message landing mid-operation stays counted
        remaining = await self._message_repo.count_unread_from(conversation["_id"], other_id)
        await self._conversation_repo.set_unread(conversation["_id"], role, remaining)
        conversation = await self._conversation_repo.get_by_id(conversation["_id"])
        return conversation, flipped

    async def archive(self, conversation_id: str, user_id: str) -> None:
        conversation, _ = await self.get_for_participant(conversation_id, user_id)
        await self._conversation_repo.set_status(conversation["_id"], "archived")
        logger.info("Conversation %s archived by %s", conversation_id, user_id)

    async def unarchive(self, conversation_id: str, user_id: str) -> None:
        conversation, _ = await self.get_for_participant(conversation_id, user_id)
        await self._conversation_repo.set_status(conversation["_id"], "active")

    async def list_for_user(self, user_id: str, status: Optional[str] = "active") -> List[Dict[str, Any]]:
        conversations = await self._conversation_repo.list_for_user(user_id, status=status)
        user_ids = [uid for c in conversations for uid in c["participants"].values()]
        profiles = await self._user_repo.get_profiles(user_ids)
        return [self.project(c, user_id, profiles) for c in conversations]

    async def get(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation, _ = await self.get_for_participant(conversation_id, user_id)
        return await self.describe(conversation, user_id)

    async def describe(self, conversation: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        profiles = await self._user_repo.get_profiles(conversation["participants"].values())
        return self.project(conversation, user_id, profiles)

    async def total_unread(self, user_id: str) -> int:
        conversations = await self._conversation_repo.list_for_user(user_id, status="active")
        return sum(c["unread_count"][resolve_viewpoint(c, user_id)] for c in conversations)

    def project(self, conversation: Dict[str, Any], user_id: str, profiles: Optional[Dict[str, dict]] = None) -> Dict[str, Any]:
        role = resolve_viewpoint(conversation, user_id)
        profiles = profiles or {}
        participants = {
            side: profiles.get(uid) or {"id": uid, "name": None, "avatar": None}
            for side, uid in conversation["participants"].items()
        }
        return {
            "id": str(conversation["_id"]),
            "participants": participants,
            "role": role,
            "item": conversation.get("item"),
            "last_message": serialize_summary(conversation.get("last_message")),
            "unread_count": conversation["unread_count"][role],
            "status": conversation.get("status", "active"),
            "created_at": _iso(conversation.get("created_at")),
            "updated_at": _iso(conversation.get("updated_at")),
        }
