import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.utils.dependencies import build_services
from marketchat.utils.errors import UpstreamDependencyError
from marketchat.utils.media_store import MediaUpload


class FakeConnection:
    """Stands in for a WebSocket: records every frame sent to it."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.sent = []
        self.closed = False

    async def send_json(self, data) -> None:
        if self.closed:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def events(self, event_type=None):
        return [f for f in self.sent if event_type is None or f["type"] == event_type]

    def clear(self) -> None:
        self.sent.clear()


class FakeMediaStore:

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.uploads = []
        self.deleted = []

    async def upload_audio(self, data, public_id=None):
        if self.fail:
            raise UpstreamDependencyError("Audio upload failed: storage unavailable")
        url = f"https://media.example.test/voice/{public_id}.mp3"
        self.uploads.append(url)
        return MediaUpload(url=url, public_id=public_id, duration=1.5)

    async def delete(self, url):
        self.deleted.append(url)
        return True


USERS = {
    "buyer": {"name": "Bruno", "avatar": "https://img.example.test/bruno.png"},
    "seller": {"name": "Sandrine", "avatar": "https://img.example.test/sandrine.png"},
    "stranger": {"name": "Yves", "avatar": None},
}


async def seed(db):
    ids = {}
    for key, profile in USERS.items():
        oid = ObjectId()
        await db["users"].insert_one({"_id": oid, "email": f"{key}@example.test", **profile})
        ids[key] = str(oid)
    listing_id = ObjectId()
    await db["products"].insert_one({
        "_id": listing_id,
        "title": "Chaise",
        "main_image": "https://img.example.test/chaise.jpg",
        "price": "15000",
        "status": "active",
    })
    ids["listing"] = str(listing_id)
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    return ids


@pytest.fixture
def db():
    return AsyncMongoMockClient()["marketchat_test"]


@pytest.fixture
async def ids(db):
    return await seed(db)


@pytest.fixture
def media_store():
    return FakeMediaStore()


@pytest.fixture
def services(db, ids, media_store):
    return build_services(db, media_store)


@pytest.fixture
def conversations(services):
    return services[0]


@pytest.fixture
def messages(services):
    return services[1]


@pytest.fixture
def reconcile(db):
    """Assert the per-role unread counters match the unread messages."""

    async def _check(conversation_id):
        conversation = await db["conversations"].find_one({"_id": ObjectId(str(conversation_id))})
        for role, other in (("buyer", "seller"), ("seller", "buyer")):
            unread = await db["messages"].count_documents({
                "conversation_id": conversation["_id"],
                "sender_id": conversation["participants"][other],
                "read": False,
            })
            assert conversation["unread_count"][role] == unread, role
        return conversation

    return _check
