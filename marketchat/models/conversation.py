from datetime import datetime
from typing import Any, Literal, Optional, TypedDict


ParticipantRole = Literal["buyer", "seller"]
ConversationStatus = Literal["active", "archived"]


class Participants(TypedDict):
    buyer: str
    seller: str


class ItemSnapshot(TypedDict, total=False):
    # copied from the listing at creation time, never re-synced
    id: str
    title: Optional[str]
    image: Optional[str]
    price: Any


class LastMessage(TypedDict, total=False):
    # absent id means a deleted-placeholder stub
    id: Any
    content: str
    sender_id: str
    sender_name: str
    timestamp: datetime
    read: bool
    type: str


class UnreadCount(TypedDict):
    buyer: int
    seller: int


class ConversationDocument(TypedDict, total=False):
    _id: Any
    participants: Participants
    item: Optional[ItemSnapshot]
    last_message: Optional[LastMessage]
    unread_count: UnreadCount
    status: ConversationStatus
    created_at: datetime
    updated_at: datetime
