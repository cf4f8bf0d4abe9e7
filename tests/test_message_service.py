"""
Tests for the message ledger: send variants, read receipts, soft delete,
listing, search, voice messages and the unread reconciliation invariant.
"""
import asyncio
import random

import pytest
from bson import ObjectId

from marketchat.models.message import DELETED_PLACEHOLDER, IMAGE_DEFAULT_CAPTION, VOICE_PREVIEW
from marketchat.repositories.message_repository import MessageRepository
from marketchat.services.conversation_service import WELCOME_TEMPLATE
from marketchat.utils.errors import (
    NotFoundError,
    NotOwnerError,
    NotParticipantError,
    SelfReadError,
    UpstreamDependencyError,
    ValidationError,
)


@pytest.fixture
async def conversation(conversations, ids):
    conversation, _ = await conversations.create_or_get(ids["buyer"], ids["seller"], ids["listing"])
    return conversation


@pytest.fixture
def cid(conversation):
    return str(conversation["_id"])


async def test_send_updates_summary_and_recipient_counter(messages, ids, cid, conversation, reconcile):
    before = conversation["unread_count"]["seller"]

    message, updated = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Bonjour"})

    assert message["read"] is False
    assert message["sender_name"] == "Bruno"
    assert updated["unread_count"]["seller"] == before + 1
    assert updated["last_message"]["id"] == message["_id"]
    assert updated["last_message"]["content"] == "Bonjour"
    assert updated["last_message"]["sender_id"] == ids["buyer"]
    await reconcile(cid)


async def test_send_rejects_non_participant(messages, ids, cid):
    with pytest.raises(NotParticipantError):
        await messages.send(ids["stranger"], {"conversation_id": cid, "content": "Salut"})


async def test_send_to_unknown_conversation(messages, ids):
    with pytest.raises(NotFoundError):
        await messages.send(ids["buyer"], {"conversation_id": str(ObjectId()), "content": "Salut"})


@pytest.mark.parametrize("payload, field", [
    ({"content": ""}, "content"),
    ({"content": "   "}, "content"),
    ({"type": "image", "content": "photo"}, "attachments"),
    ({"type": "audio"}, "attachments"),
    ({"type": "offer", "content": "Offre"}, "offer_details"),
    ({"content": "x" * 2001}, "content"),
])
async def test_send_validates_payload(messages, ids, cid, db, payload, field):
    before = await db["messages"].count_documents({})
    with pytest.raises(ValidationError) as exc:
        await messages.send(ids["buyer"], {"conversation_id": cid, **payload})
    assert exc.value.field == field
    assert await db["messages"].count_documents({}) == before


async def test_deleted_type_cannot_be_sent(messages, ids, cid):
    with pytest.raises(ValidationError):
        await messages.send(ids["buyer"], {"conversation_id": cid, "type": "deleted", "content": "x"})


async def test_audio_message_may_have_empty_content(messages, ids, cid):
    message, updated = await messages.send(ids["buyer"], {
        "conversation_id": cid,
        "type": "audio",
        "attachments": ["https://media.example.test/a.mp3"],
    })

    assert message["content"] == ""
    assert updated["last_message"]["content"] == VOICE_PREVIEW
    assert updated["last_message"]["type"] == "audio"


async def test_image_message_gets_default_caption(messages, ids, cid):
    message, _ = await messages.send(ids["seller"], {
        "conversation_id": cid,
        "type": "image",
        "attachments": ["https://img.example.test/1.jpg", "https://img.example.test/2.jpg"],
    })

    assert message["content"] == IMAGE_DEFAULT_CAPTION
    assert message["attachments"] == ["https://img.example.test/1.jpg", "https://img.example.test/2.jpg"]


async def test_offer_snapshot_resolves_listing(messages, ids, cid):
    message, _ = await messages.send(ids["buyer"], {
        "conversation_id": cid,
        "type": "offer",
        "offer_details": {"item_id": ids["listing"], "price": "12000"},
    })

    assert message["type"] == "offer"
    assert message["content"] == 'Nouvelle offre pour "Chaise"'
    assert message["offer_details"] == {
        "item_id": ids["listing"],
        "item_title": "Chaise",
        "item_image": "https://img.example.test/chaise.jpg",
        "price": "12000",
    }


async def test_offer_for_missing_listing_is_not_found(messages, ids, cid):
    with pytest.raises(NotFoundError):
        await messages.send(ids["buyer"], {
            "conversation_id": cid,
            "type": "offer",
            "offer_details": {"item_id": str(ObjectId())},
        })


async def test_offer_listing_failure_is_upstream_error(messages, ids, cid, db, monkeypatch):
    async def listing_down(product_id):
        raise RuntimeError("catalog unavailable")

    monkeypatch.setattr(messages._product_repo, "get_listing", listing_down)
    before = await db["messages"].count_documents({})

    with pytest.raises(UpstreamDependencyError):
        await messages.send(ids["buyer"], {
            "conversation_id": cid,
            "type": "offer",
            "offer_details": {"item_id": ids["listing"]},
        })
    assert await db["messages"].count_documents({}) == before


async def test_mark_read_by_recipient(messages, ids, cid, reconcile):
    message, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Bonjour"})

    read, conversation, changed = await messages.mark_read(str(message["_id"]), ids["seller"])

    assert changed is True
    assert read["read"] is True
    assert read["read_at"] is not None
    assert conversation["unread_count"]["seller"] == 0
    assert conversation["last_message"]["read"] is True
    await reconcile(cid)


async def test_mark_read_is_idempotent(messages, ids, cid, db):
    message, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Bonjour"})
    await messages.mark_read(str(message["_id"]), ids["seller"])
    first = await db["messages"].find_one({"_id": message["_id"]})
    counters = (await db["conversations"].find_one({"_id": ObjectId(cid)}))["unread_count"]

    again, _, changed = await messages.mark_read(str(message["_id"]), ids["seller"])

    assert changed is False
    assert again["read"] is True
    assert again["read_at"] == first["read_at"]
    assert (await db["conversations"].find_one({"_id": ObjectId(cid)}))["unread_count"] == counters


async def test_sender_cannot_read_own_message(messages, ids, cid, db):
    message, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Bonjour"})
    counters = (await db["conversations"].find_one({"_id": ObjectId(cid)}))["unread_count"]

    with pytest.raises(SelfReadError):
        await messages.mark_read(str(message["_id"]), ids["buyer"])

    stored = await db["messages"].find_one({"_id": message["_id"]})
    assert stored["read"] is False
    assert (await db["conversations"].find_one({"_id": ObjectId(cid)}))["unread_count"] == counters


async def test_mark_read_rejects_non_participant(messages, ids, cid):
    message, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Bonjour"})
    with pytest.raises(NotParticipantError):
        await messages.mark_read(str(message["_id"]), ids["stranger"])


async def test_mark_read_unknown_message(messages, ids):
    with pytest.raises(NotFoundError):
        await messages.mark_read(str(ObjectId()), ids["seller"])


async def test_deleting_last_message_restores_previous_summary(messages, ids, cid, db):
    welcome = await db["messages"].find_one({"conversation_id": ObjectId(cid)})
    message, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Bonjour"})

    deleted, changed = await messages.soft_delete(str(message["_id"]), ids["buyer"])

    assert changed is True
    assert deleted["type"] == "deleted"
    assert deleted["content"] == DELETED_PLACEHOLDER
    assert deleted["attachments"] == []
    conversation = await db["conversations"].find_one({"_id": ObjectId(cid)})
    assert conversation["last_message"]["id"] == welcome["_id"]
    assert conversation["last_message"]["content"] == WELCOME_TEMPLATE.format(title="Chaise")


async def test_delete_is_terminal_and_idempotent(messages, ids, cid, db):
    message, _ = await messages.send(ids["buyer"], {
        "conversation_id": cid,
        "type": "image",
        "content": "la photo",
        "attachments": ["https://img.example.test/p.jpg"],
    })
    await messages.soft_delete(str(message["_id"]), ids["buyer"])

    again, changed = await messages.soft_delete(str(message["_id"]), ids["buyer"])

    assert changed is False
    assert again["content"] == DELETED_PLACEHOLDER
    assert again["attachments"] == []
    assert again["type"] == "deleted"


async def test_only_sender_can_delete(messages, ids, cid):
    message, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Bonjour"})
    with pytest.raises(NotOwnerError):
        await messages.soft_delete(str(message["_id"]), ids["seller"])


async def test_deleting_only_message_leaves_placeholder_stub(conversations, messages, ids, db):
    conversation, _ = await conversations.create_or_get(ids["buyer"], ids["seller"])
    cid = str(conversation["_id"])
    message, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Bonjour"})

    await messages.soft_delete(str(message["_id"]), ids["buyer"])

    last = (await db["conversations"].find_one({"_id": ObjectId(cid)}))["last_message"]
    assert last.get("id") is None
    assert last["content"] == DELETED_PLACEHOLDER
    assert last["type"] == "deleted"
    assert last["read"] is True


async def test_deleting_older_message_keeps_summary(messages, ids, cid, db):
    older, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Premier"})
    newer, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Second"})

    await messages.soft_delete(str(older["_id"]), ids["buyer"])

    last = (await db["conversations"].find_one({"_id": ObjectId(cid)}))["last_message"]
    assert last["id"] == newer["_id"]
    assert last["content"] == "Second"


async def test_list_is_chronological_and_paginated(messages, ids, cid):
    for i in range(5):
        sender = ids["buyer"] if i % 2 == 0 else ids["seller"]
        await messages.send(sender, {"conversation_id": cid, "content": f"message {i}"})

    first_page, pagination = await messages.list_messages(cid, ids["buyer"], page=1, limit=2)
    last_page, _ = await messages.list_messages(cid, ids["buyer"], page=3, limit=2)

    assert pagination == {"page": 1, "limit": 2, "total": 6, "pages": 3}
    assert first_page[0]["content"].startswith("Bonjour !")
    assert first_page[1]["content"] == "message 0"
    assert [m["content"] for m in last_page] == ["message 3", "message 4"]


async def test_list_keeps_deleted_placeholders(messages, ids, cid):
    message, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Oups"})
    await messages.soft_delete(str(message["_id"]), ids["buyer"])

    items, pagination = await messages.list_messages(cid, ids["seller"])

    assert pagination["total"] == 2
    assert items[-1]["type"] == "deleted"


async def test_list_requires_participant(messages, ids, cid):
    with pytest.raises(NotParticipantError):
        await messages.list_messages(cid, ids["stranger"])


async def test_search_is_case_insensitive_and_skips_deleted(messages, ids, cid):
    first, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "La chaise est en bois ?"})
    gone, _ = await messages.send(ids["buyer"], {"conversation_id": cid, "content": "chaise rouge"})
    await messages.soft_delete(str(gone["_id"]), ids["buyer"])
    last, _ = await messages.send(ids["seller"], {"conversation_id": cid, "content": "Oui, CHAISE en chêne (massif)"})

    found = await messages.search(cid, "chaise", ids["buyer"])

    # the welcome message mentions "Chaise" too
    assert [m["_id"] for m in found[:2]] == [last["_id"], first["_id"]]
    assert len(found) == 3
    assert all(m["type"] != "deleted" for m in found)
    assert [m["_id"] for m in await messages.search(cid, "(massif)", ids["seller"])] == [last["_id"]]


async def test_search_requires_query_and_participant(messages, ids, cid):
    with pytest.raises(ValidationError):
        await messages.search(cid, "  ", ids["buyer"])
    with pytest.raises(NotParticipantError):
        await messages.search(cid, "chaise", ids["stranger"])


async def test_voice_message_uploads_then_sends(messages, media_store, ids, cid, reconcile):
    message, conversation = await messages.send_voice(ids["buyer"], cid, b"\x00\x01audio", "audio/webm")

    assert message["type"] == "audio"
    assert message["content"] == ""
    assert message["attachments"] == media_store.uploads
    assert conversation["last_message"]["content"] == VOICE_PREVIEW
    assert conversation["unread_count"]["seller"] == 1
    await reconcile(cid)


async def test_voice_upload_failure_creates_nothing(messages, media_store, ids, cid, db):
    media_store.fail = True
    before = await db["messages"].count_documents({})

    with pytest.raises(UpstreamDependencyError):
        await messages.send_voice(ids["buyer"], cid, b"audio", "audio/mpeg")

    assert await db["messages"].count_documents({}) == before


async def test_voice_rejects_non_audio(messages, media_store, ids, cid):
    with pytest.raises(ValidationError):
        await messages.send_voice(ids["buyer"], cid, b"<html>", "text/html")
    assert media_store.uploads == []


async def test_voice_persist_failure_removes_upload(messages, media_store, ids, cid, monkeypatch):
    async def store_down(**kwargs):
        raise RuntimeError("write failed")

    monkeypatch.setattr(messages._message_repo, "save_message", store_down)

    with pytest.raises(RuntimeError):
        await messages.send_voice(ids["buyer"], cid, b"audio", "audio/ogg")

    assert media_store.deleted == media_store.uploads
    assert len(media_store.deleted) == 1


async def test_failed_insert_leaves_summary_untouched(messages, ids, cid, db, monkeypatch):
    before = await db["conversations"].find_one({"_id": ObjectId(cid)})
    message_count = await db["messages"].count_documents({})

    async def store_down(**kwargs):
        raise RuntimeError("write failed")

    monkeypatch.setattr(messages._message_repo, "save_message", store_down)

    with pytest.raises(RuntimeError):
        await messages.send(ids["buyer"], {"conversation_id": cid, "content": "Bonjour"})

    after = await db["conversations"].find_one({"_id": ObjectId(cid)})
    assert after["last_message"] == before["last_message"]
    assert after["unread_count"] == before["unread_count"]
    assert after["updated_at"] == before["updated_at"]
    assert await db["messages"].count_documents({}) == message_count


async def test_concurrent_sends_keep_latest_summary(messages, ids, cid, db, reconcile):
    await asyncio.gather(*[
        messages.send(ids["buyer"] if i % 2 else ids["seller"], {"conversation_id": cid, "content": f"m{i}"})
        for i in range(10)
    ])

    latest = await db["messages"].find({"conversation_id": ObjectId(cid)}).sort("_id", -1).to_list(length=1)
    conversation = await reconcile(cid)
    assert conversation["last_message"]["id"] == latest[0]["_id"]


async def test_unread_counters_reconcile_after_mixed_operations(conversations, messages, ids, cid, db, reconcile):
    rng = random.Random(7)
    sides = {"buyer": ids["buyer"], "seller": ids["seller"]}

    for step in range(40):
        action = rng.choice(["send", "send", "read_one", "read_all", "delete"])
        role = rng.choice(["buyer", "seller"])
        other = "seller" if role == "buyer" else "buyer"
        if action == "send":
            await messages.send(sides[role], {"conversation_id": cid, "content": f"step {step}"})
        elif action == "read_one":
            pending = await db["messages"].find({"conversation_id": ObjectId(cid), "sender_id": sides[other], "read": False}).to_list(length=None)
            if pending:
                await messages.mark_read(str(rng.choice(pending)["_id"]), sides[role])
        elif action == "read_all":
            await conversations.mark_read(cid, sides[role])
        else:
            own = await db["messages"].find({"conversation_id": ObjectId(cid), "sender_id": sides[role]}).to_list(length=None)
            if own:
                await messages.soft_delete(str(rng.choice(own)["_id"]), sides[role])
        await reconcile(cid)


class _InterleavingCursor:

    def __init__(self, cursor, after_fetch):
        self._cursor = cursor
        self._after_fetch = after_fetch

    async def to_list(self, length=None):
        docs = await self._cursor.to_list(length=length)
        await self._after_fetch(docs)
        return docs


class _InterleavingCollection:
    """Runs a callback between a find() and whatever the caller does next."""

    def __init__(self, collection, after_fetch):
        self._collection = collection
        self._after_fetch = after_fetch

    def find(self, *args, **kwargs):
        return _InterleavingCursor(self._collection.find(*args, **kwargs), self._after_fetch)

    def __getattr__(self, name):
        return getattr(self._collection, name)


async def test_bulk_read_skips_messages_read_concurrently(messages, ids, cid, db):
    for text in ("Toujours dispo ?", "Je passe ce soir"):
        await messages.send(ids["seller"], {"conversation_id": cid, "content": text})
    plain = MessageRepository(db)
    raced = []

    async def single_read_in_between(docs):
        if docs and not raced:
            raced.append(await plain.mark_read(docs[0]["_id"]))

    class RacingRepository(MessageRepository):
        @property
        def collection(self):
            return _InterleavingCollection(db["messages"], single_read_in_between)

    flipped = await RacingRepository(db).mark_read_from_sender(cid, ids["seller"])

    assert len(flipped) == 2
    assert raced[0]["_id"] not in [m["_id"] for m in flipped]
    assert all(m["read"] and m["read_at"] is not None for m in flipped)
    stored = await db["messages"].find_one({"_id": raced[0]["_id"]})
    assert stored["read_at"] == raced[0]["read_at"]
