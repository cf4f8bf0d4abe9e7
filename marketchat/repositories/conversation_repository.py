from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from marketchat.models.conversation import ConversationDocument, ItemSnapshot, LastMessage


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants.buyer", ASCENDING), ("status", ASCENDING)])
        await self.collection.create_index([("participants.seller", ASCENDING), ("status", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING)])
        await self.collection.create_index([("item.id", ASCENDING)])
        await self.collection.create_index(
            [("participants.buyer", ASCENDING), ("participants.seller", ASCENDING), ("item.id", ASCENDING)],
            unique=True,
        )

    async def get_by_id(self, conversation_id) -> Optional[ConversationDocument]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return None
        return await self.collection.find_one({"_id": oid})

    async def find_for_pair(self, buyer_id: str, seller_id: str, item_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if item_id:
            return await self.collection.find_one({
                "participants.buyer": buyer_id,
                "participants.seller": seller_id,
                "item.id": item_id,
            })
        # without a listing the pair is unordered
        return await self.collection.find_one({
            "$or": [
                {"participants.buyer": buyer_id, "participants.seller": seller_id},
                {"participants.buyer": seller_id, "participants.seller": buyer_id},
            ],
            "item": None,
        })

    async def create(self, buyer_id: str, seller_id: str, item: Optional[ItemSnapshot] = None) -> tuple[ConversationDocument, bool]:
        """Insert a new conversation; returns (document, created).

        A concurrent insert for the same key loses the unique index race and
        gets the winner's document back with created=False.
        """
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "participants": {"buyer": buyer_id, "seller": seller_id},
            "item": dict(item) if item else None,
            "last_message": None,
            "unread_count": {"buyer": 0, "seller": 0},
            "status": "active",
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            existing = await self.find_for_pair(buyer_id, seller_id, item["id"] if item else None)
            if existing is None:
                raise
            return existing, False
        doc["_id"] = result.inserted_id
        return doc, True

    async def apply_new_message(self, conversation_id, summary: LastMessage, recipient_role: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(conversation_id)
        await self.collection.update_one(
            {"_id": oid},
            {
                "$inc": {f"unread_count.{recipient_role}": 1},
                "$set": {"updated_at": datetime.now(timezone.utc)},
            },
        )
        # only move the summary forward: a slower writer holding an older
        # message must not overwrite a newer one
        await self.collection.update_one(
            {
                "_id": oid,
                "$or": [
                    {"last_message": None},
                    {"last_message.id": None},
                    {"last_message.id": {"$lt": summary["id"]}},
                ],
            },
            {"$set": {"last_message": dict(summary)}},
        )
        return await self.collection.find_one({"_id": oid})

    async def mark_last_message_read(self, conversation_id, message_id) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id), "last_message.id": message_id},
            {"$set": {"last_message.read": True}},
        )

    async def mark_last_message_read_from(self, conversation_id, sender_id: str) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id), "last_message.sender_id": sender_id},
            {"$set": {"last_message.read": True}},
        )

    async def replace_last_message(self, conversation_id, expected_message_id, summary: LastMessage) -> bool:
        result = await self.collection.update_one(
            {"_id": to_object_id(conversation_id), "last_message.id": expected_message_id},
            {"$set": {"last_message": dict(summary)}},
        )
        return bool(result.modified_count)

    async def set_unread(self, conversation_id, role: str, value: int) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id)},
            {"$set": {f"unread_count.{role}": max(value, 0)}},
        )

    async def decrement_unread(self, conversation_id, role: str) -> Optional[Dict[str, Any]]:
        field = f"unread_count.{role}"
        updated = await self.collection.find_one_and_update(
            {"_id": to_object_id(conversation_id), field: {"$gt": 0}},
            {"$inc": {field: -1}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            return await self.get_by_id(conversation_id)
        return updated

    async def set_status(self, conversation_id, status: str) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id)},
            {"$set": {"status": status}},
        )

    async def list_for_user(self, user_id: str, status: Optional[str] = "active") -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {
            "$or": [
                {"participants.buyer": user_id},
                {"participants.seller": user_id},
            ],
        }
        if status:
            query["status"] = status
        cursor = self.collection.find(query).sort([("updated_at", DESCENDING), ("_id", DESCENDING)])
        return await cursor.to_list(length=None)
