from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.repositories.conversation_repository import to_object_id


class ProductRepository:
    """Read-only view over the catalog, used to snapshot listings."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("products")

    async def get_listing(self, product_id: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(product_id)
        if oid is None:
            return None
        doc = await self._collection.find_one({"_id": oid}, {"title": 1, "main_image": 1, "price": 1, "status": 1})
        if not doc:
            return None
        return {
            "id": str(doc["_id"]),
            "title": doc.get("title"),
            "main_image": doc.get("main_image"),
            "price": doc.get("price"),
            "status": doc.get("status"),
        }
