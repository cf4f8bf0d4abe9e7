import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from marketchat.models.message import DELETED_PLACEHOLDER, MessageDocument
from marketchat.repositories.conversation_repository import to_object_id


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("sender_id", ASCENDING)])
        await self.collection.create_index([("read", ASCENDING)])
        await self.collection.create_index([("type", ASCENDING)])

    async def save_message(
        self,
        conversation_id,
        sender_id: str,
        sender_name: str,
        sender_avatar: Optional[str],
        content: str,
        type: str,
        attachments: Optional[List[str]] = None,
        offer_details: Optional[Dict[str, Any]] = None,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "conversation_id": to_object_id(conversation_id),
            "sender_id": sender_id,
            "sender_name": sender_name,
            "sender_avatar": sender_avatar,
            "content": content,
            "type": type,
            "attachments": list(attachments or []),
            "offer_details": offer_details,
            "read": False,
            "read_at": None,
            "created_at": datetime.now(timezone.utc),
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def get_by_id(self, message_id) -> Optional[MessageDocument]:
        oid = to_object_id(message_id)
        if oid is None:
            return None
        return await self.collection.find_one({"_id": oid})

    async def get_page(self, conversation_id, page: int = 1, limit: int = 50) -> Tuple[List[Dict[str, Any]], int]:
        query = {"conversation_id": to_object_id(conversation_id)}
        skip = (page - 1) * limit
        cursor = self.collection.find(query).sort([("created_at", ASCENDING), ("_id", ASCENDING)]).skip(skip).limit(limit)
        items = await cursor.to_list(length=limit)
        total = await self.collection.count_documents(query)
        return items, total

    async def mark_read(self, message_id) -> Optional[Dict[str, Any]]:
        """Flip one message to read. Returns None when it was already read."""
        return await self.collection.find_one_and_update(
            {"_id": to_object_id(message_id), "read": False},
            {"$set": {"read": True, "read_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )

    async def mark_read_from_sender(self, conversation_id, sender_id: str) -> List[Dict[str, Any]]:
        query = {"conversation_id": to_object_id(conversation_id), "sender_id": sender_id, "read": False}
        pending = await self.collection.find(query).to_list(length=None)
        if not pending:
            return []
        read_at = datetime.now(timezone.utc)
        flipped = []
        for m in pending:
            # conditional per message: one read concurrently elsewhere is not reported twice
            updated = await self.collection.find_one_and_update(
                {"_id": m["_id"], "read": False},
                {"$set": {"read": True, "read_at": read_at}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                flipped.append(updated)
        return flipped

    async def count_unread_from(self, conversation_id, sender_id: str) -> int:
        return await self.collection.count_documents({
            "conversation_id": to_object_id(conversation_id),
            "sender_id": sender_id,
            "read": False,
        })

    async def soft_delete(self, message_id) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one_and_update(
            {"_id": to_object_id(message_id), "type": {"$ne": "deleted"}},
            {"$set": {"content": DELETED_PLACEHOLDER, "type": "deleted", "attachments": []}},
            return_document=ReturnDocument.AFTER,
        )

    async def latest_excluding(self, conversation_id, message_id) -> Optional[Dict[str, Any]]:
        # deleted messages are eligible on purpose, see DESIGN.md
        cursor = self.collection.find({
            "conversation_id": to_object_id(conversation_id),
            "_id": {"$ne": to_object_id(message_id)},
        }).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(1)
        items = await cursor.to_list(length=1)
        return items[0] if items else None

    async def search(self, conversation_id, query_text: str) -> List[Dict[str, Any]]:
        cursor = self.collection.find({
            "conversation_id": to_object_id(conversation_id),
            "content": {"$regex": re.escape(query_text), "$options": "i"},
            "type": {"$ne": "deleted"},
        }).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        return await cursor.to_list(length=None)
