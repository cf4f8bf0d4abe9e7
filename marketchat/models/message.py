from datetime import datetime
from typing import Any, List, Literal, Optional, TypedDict


MessageType = Literal["text", "image", "audio", "offer", "deleted"]

DELETED_PLACEHOLDER = "Ce message a été supprimé"
IMAGE_DEFAULT_CAPTION = "Image envoyée"
VOICE_PREVIEW = "🎤 Message vocal"
MAX_CONTENT_LENGTH = 2000


class OfferDetails(TypedDict, total=False):
    item_id: str
    item_title: Optional[str]
    item_image: Optional[str]
    price: Any


class MessageDocument(TypedDict, total=False):
    _id: Any
    conversation_id: Any
    sender_id: str
    sender_name: str
    sender_avatar: Optional[str]
    content: str
    type: MessageType
    attachments: List[str]
    offer_details: Optional[OfferDetails]
    # read state: set once, never reverts
    read: bool
    read_at: Optional[datetime]
    created_at: datetime
