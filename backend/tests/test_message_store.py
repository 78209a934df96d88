import asyncio
import itertools

import pytest
import pytest_asyncio
from bson import ObjectId

from app.repositories.conversation_repository import ConversationRepository
from app.repositories.message_repository import MessageRepository
from app.repositories.user_repository import UserRepository
from app.services.chat_service import present_conversation
from app.services.conversation_resolver import ConversationResolver
from app.services.message_store import MessageStore
from app.utils.exceptions import ForbiddenError, InvalidInputError, NotFoundError


@pytest.fixture
def store(db):
    return MessageStore(ConversationRepository(db), MessageRepository(db))


@pytest_asyncio.fixture
async def conversation(db, user_ids):
    resolver = ConversationResolver(ConversationRepository(db), UserRepository(db))
    conversation, _ = await resolver.get_or_create(user_ids["Alice"], user_ids["Bob"])
    return conversation


def unread(conversation, user_id):
    return conversation["participantState"][user_id]["unreadCount"]


@pytest.mark.asyncio
async def test_append_updates_last_message_and_recipient_counter(store, conversation, user_ids):
    alice, bob = user_ids["Alice"], user_ids["Bob"]
    message, updated = await store.append(conversation["_id"], alice, "  hi bob  ")

    assert message["text"] == "hi bob"
    assert message["senderId"] == alice
    assert message["readBy"] == [alice]
    assert updated["lastMessage"] == {"text": "hi bob", "senderId": alice, "timestamp": message["createdAt"]}
    assert updated["updatedAt"] == message["createdAt"]
    assert unread(updated, bob) == 1
    assert unread(updated, alice) == 0


@pytest.mark.asyncio
async def test_last_message_tracks_latest_append(store, conversation, user_ids):
    alice, bob = user_ids["Alice"], user_ids["Bob"]
    await store.append(conversation["_id"], alice, "first")
    second, updated = await store.append(conversation["_id"], alice, "second")

    assert updated["lastMessage"]["text"] == "second"
    assert updated["lastMessage"]["timestamp"] == second["createdAt"]
    assert unread(updated, bob) == 2


@pytest.mark.asyncio
async def test_mark_read_resets_counter_and_marks_messages(db, store, conversation, user_ids):
    alice, bob = user_ids["Alice"], user_ids["Bob"]
    await store.append(conversation["_id"], alice, "one")
    await store.append(conversation["_id"], alice, "two")

    updated, read_at, changed = await store.mark_read(conversation["_id"], bob)

    assert changed is True
    assert unread(updated, bob) == 0
    assert updated["participantState"][bob]["lastReadAt"] == read_at
    assert await MessageRepository(db).count_unread(conversation["_id"], bob) == 0
    async for message in db["directMessages"].find({"conversationId": conversation["_id"]}):
        assert bob in message["readBy"]


@pytest.mark.asyncio
async def test_mark_read_twice_changes_nothing(store, conversation, user_ids):
    alice, bob = user_ids["Alice"], user_ids["Bob"]
    await store.append(conversation["_id"], alice, "hello")
    first, first_read_at, _ = await store.mark_read(conversation["_id"], bob)

    second, second_read_at, changed = await store.mark_read(conversation["_id"], bob)

    assert changed is False
    assert second_read_at == first_read_at
    assert second["updatedAt"] == first["updatedAt"]
    assert unread(second, bob) == 0


@pytest.mark.asyncio
async def test_outsider_cannot_read_or_send(db, store, conversation, user_ids):
    alice, carol = user_ids["Alice"], user_ids["Carol"]
    await store.append(conversation["_id"], alice, "private")
    before = await ConversationRepository(db).get_by_id(conversation["_id"])

    with pytest.raises(ForbiddenError):
        await store.mark_read(conversation["_id"], carol)
    with pytest.raises(ForbiddenError):
        await store.append(conversation["_id"], carol, "let me in")
    with pytest.raises(ForbiddenError):
        await store.list_messages(conversation["_id"], carol, 10)

    assert await ConversationRepository(db).get_by_id(conversation["_id"]) == before
    assert await db["directMessages"].count_documents({}) == 1


@pytest.mark.asyncio
async def test_unread_counter_matches_unread_messages(db, store, conversation, user_ids):
    alice, bob = user_ids["Alice"], user_ids["Bob"]
    cid = conversation["_id"]
    messages = MessageRepository(db)

    await asyncio.gather(*(store.append(cid, alice, f"a{i}") for i in range(4)))
    await asyncio.gather(*(store.append(cid, bob, f"b{i}") for i in range(3)))
    await store.mark_read(cid, bob)
    await asyncio.gather(
        store.append(cid, alice, "late"),
        store.mark_read(cid, alice),
        store.append(cid, bob, "reply"),
    )

    current = await store.get_conversation(cid)
    for uid in (alice, bob):
        assert unread(current, uid) == await messages.count_unread(cid, uid)
        assert unread(current, uid) >= 0


@pytest.mark.asyncio
async def test_message_pages_cover_history_once(store, conversation, user_ids):
    alice, bob = user_ids["Alice"], user_ids["Bob"]
    sent = []
    for i in range(25):
        sender = alice if i % 2 else bob
        message, _ = await store.append(conversation["_id"], sender, f"message {i}")
        sent.append(message["_id"])

    seen = []
    cursor = None
    pages = 0
    while True:
        page = await store.list_messages(conversation["_id"], alice, 10, cursor)
        pages += 1
        seen.extend(page["items"])
        if not page["hasMore"]:
            assert page["nextCursor"] is None
            break
        cursor = page["nextCursor"]

    assert pages == 3
    assert sorted(m["_id"] for m in seen) == sorted(sent)
    keys = [(m["createdAt"], m["_id"]) for m in seen]
    assert keys == sorted(keys, reverse=True)


@pytest.mark.asyncio
async def test_empty_text_rejected(db, store, conversation, user_ids):
    with pytest.raises(InvalidInputError):
        await store.append(conversation["_id"], user_ids["Alice"], "   ")
    assert await db["directMessages"].count_documents({}) == 0


@pytest.mark.asyncio
async def test_malformed_cursor_rejected(store, conversation, user_ids):
    with pytest.raises(InvalidInputError):
        await store.list_messages(conversation["_id"], user_ids["Alice"], 10, "2026-10-19T00:00:00.000Z|zzz")


@pytest.mark.asyncio
async def test_unknown_conversation(store, user_ids):
    with pytest.raises(NotFoundError):
        await store.mark_read("0" * 24, user_ids["Alice"])
    with pytest.raises(InvalidInputError):
        await store.get_conversation("nope")


@pytest.mark.asyncio
async def test_list_conversations_newest_activity_first(db, store, user_ids):
    resolver = ConversationResolver(ConversationRepository(db), UserRepository(db))
    alice = user_ids["Alice"]
    with_bob, _ = await resolver.get_or_create(alice, user_ids["Bob"])
    with_carol, _ = await resolver.get_or_create(alice, user_ids["Carol"])
    await store.append(with_carol["_id"], alice, "carol first")
    await asyncio.sleep(0.01)
    await store.append(with_bob["_id"], alice, "then bob")

    page = await store.list_conversations(alice, 10)

    assert [c["_id"] for c in page["items"]] == [with_bob["_id"], with_carol["_id"]]
    assert page["hasMore"] is False


def ticking_clock(start=0):
    """utc_now_iso stand-in returning a strictly later millisecond on every call."""
    counter = itertools.count(start)
    return lambda: f"2026-10-19T12:00:00.{next(counter):03d}Z"


class SlowSaveRepository(MessageRepository):

    def __init__(self, db, slow_text):
        super().__init__(db)
        self.slow_text = slow_text

    async def save_message(self, conversation_id, sender_id, text, created_at):
        if text == self.slow_text:
            await asyncio.sleep(0.05)
        return await super().save_message(conversation_id, sender_id, text, created_at)


@pytest.mark.asyncio
async def test_late_commit_of_older_send_keeps_newer_preview(db, conversation, user_ids, monkeypatch):
    alice, bob = user_ids["Alice"], user_ids["Bob"]
    monkeypatch.setattr("app.services.message_store.utc_now_iso", ticking_clock(1))
    store = MessageStore(ConversationRepository(db), SlowSaveRepository(db, "older"))

    (older, _), (newer, _) = await asyncio.gather(
        store.append(conversation["_id"], alice, "older"),
        store.append(conversation["_id"], bob, "newer"),
    )

    assert older["createdAt"] < newer["createdAt"]
    current = await store.get_conversation(conversation["_id"])
    assert current["lastMessage"]["text"] == "newer"
    assert current["lastMessage"]["timestamp"] == newer["createdAt"]
    assert current["updatedAt"] == newer["createdAt"]
    assert unread(current, alice) == 1
    assert unread(current, bob) == 1


@pytest.mark.asyncio
async def test_message_pages_with_identical_timestamps(store, conversation, user_ids, monkeypatch):
    monkeypatch.setattr("app.services.message_store.utc_now_iso", lambda: "2026-10-19T12:00:00.000Z")
    sent = []
    for i in range(7):
        message, _ = await store.append(conversation["_id"], user_ids["Alice"], f"same instant {i}")
        sent.append(message["_id"])

    seen = []
    cursor = None
    while True:
        page = await store.list_messages(conversation["_id"], user_ids["Bob"], 3, cursor)
        seen.extend(m["_id"] for m in page["items"])
        if not page["hasMore"]:
            break
        cursor = page["nextCursor"]

    assert len(seen) == len(set(seen)) == 7
    assert seen == list(reversed(sent))


@pytest.mark.asyncio
async def test_conversation_pages_with_identical_timestamps(db, store, user_ids, monkeypatch):
    def same_instant():
        return "2026-10-19T12:00:00.000Z"

    monkeypatch.setattr("app.services.message_store.utc_now_iso", same_instant)
    monkeypatch.setattr("app.services.conversation_resolver.utc_now_iso", same_instant)
    extra = [{"_id": ObjectId(), "firstName": f"Peer{i}", "lastName": "Tester"} for i in range(3)]
    await db["users"].insert_many(extra)
    resolver = ConversationResolver(ConversationRepository(db), UserRepository(db))
    alice = user_ids["Alice"]
    peers = [user_ids["Bob"], user_ids["Carol"]] + [str(u["_id"]) for u in extra]

    created = set()
    for peer in peers:
        conversation, _ = await resolver.get_or_create(alice, peer)
        await store.append(conversation["_id"], alice, "hello")
        created.add(conversation["_id"])

    seen = []
    cursor = None
    while True:
        page = await store.list_conversations(alice, 2, cursor)
        seen.extend(c["_id"] for c in page["items"])
        if not page["hasMore"]:
            break
        cursor = page["nextCursor"]

    assert len(seen) == len(set(seen)) == 5
    assert set(seen) == created


@pytest.mark.asyncio
async def test_read_between_insert_and_counter_bump_converges(db, store, conversation, user_ids):
    alice, bob = user_ids["Alice"], user_ids["Bob"]
    cid = conversation["_id"]
    conversations = ConversationRepository(db)
    messages = MessageRepository(db)

    # the two halves of an append with the recipient's read landing in between
    message = await messages.save_message(cid, alice, "hi", "2026-10-19T12:00:00.000Z")
    during, _, changed = await store.mark_read(cid, bob)
    assert changed is True
    assert unread(during, bob) == -1
    assert present_conversation(during, bob)["unreadCount"] == 0

    after = await conversations.record_new_message(cid, alice, bob, "hi", message["createdAt"])

    assert unread(after, bob) == 0 == await messages.count_unread(cid, bob)
