from typing import Dict, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.models.user import UserDocument
from marketchat.repositories.conversation_repository import to_object_id


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:

        oid = to_object_id(user_id)
        if oid is None:
            return None
        user = await self._collection.find_one({"_id": oid}, {"password": 0, "hashed_password": 0})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user

    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, dict]:

        oids = [oid for oid in (to_object_id(u) for u in set(user_ids)) if oid is not None]
        docs = await self._collection.find({"_id": {"$in": oids}}, {"name": 1, "avatar": 1}).to_list(length=None)
        return {
            str(doc["_id"]): {"id": str(doc["_id"]), "name": doc.get("name"), "avatar": doc.get("avatar")}
            for doc in docs
        }
