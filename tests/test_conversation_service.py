import pytest
from pymongo.errors import OperationFailure

from dm_relay.services.conversation_service import ConversationService, conversation_id_for, other_member
from dm_relay.services.errors import InvalidParticipants, ParticipantNotFound
from tests.conftest import ALICE, BOB, CAROL


@pytest.mark.parametrize("a,b", [(ALICE, BOB), (BOB, CAROL), ("u1", "u10"), ("Zed", "amy")])
def test_conversation_id_is_order_independent(a, b):
    assert conversation_id_for(a, b) == conversation_id_for(b, a)
    assert conversation_id_for(a, b) == "__".join(sorted([a, b]))


def test_conversation_id_rejects_self_and_blank():
    with pytest.raises(InvalidParticipants):
        conversation_id_for(ALICE, ALICE)
    with pytest.raises(InvalidParticipants):
        conversation_id_for(ALICE, "")


def test_other_member():
    conversation_id = conversation_id_for(ALICE, BOB)
    assert other_member(conversation_id, ALICE) == BOB
    assert other_member(conversation_id, BOB) == ALICE
    with pytest.raises(InvalidParticipants):
        other_member(conversation_id, CAROL)


async def test_resolve_from_both_sides_gives_same_id(conversation_service):
    from_alice = await conversation_service.resolve_or_create(ALICE, BOB)
    from_bob = await conversation_service.resolve_or_create(BOB, ALICE)

    assert from_alice.conversation_id == from_bob.conversation_id == "alice__bob"
    assert from_alice.other_user.id == BOB
    assert from_alice.other_user.name == "bobby"
    assert from_bob.other_user.name == "Alice"
    assert from_bob.other_user.image == "https://img.example/alice.png"


async def test_resolve_creates_own_copy_with_defaults(conversation_service, repos):
    resolved = await conversation_service.resolve_or_create(ALICE, BOB)

    copy = await repos.conversations.get_copy(ALICE, resolved.conversation_id)
    assert copy["unread_count"] == 0
    assert copy["last_message"] == ""
    assert copy["members"] == [ALICE, BOB]
    assert copy["created_at"] == copy["last_message_at"]
    assert copy["with_user"]["id"] == BOB


async def test_resolve_does_not_overwrite_existing_copy(conversation_service, repos):
    resolved = await conversation_service.resolve_or_create(ALICE, BOB)
    created = await repos.conversations.get_copy(ALICE, resolved.conversation_id)
    await repos.conversations.record_incoming(ALICE, resolved.conversation_id, "intent-1", "hey", created["created_at"])

    await conversation_service.resolve_or_create(ALICE, BOB)

    copy = await repos.conversations.get_copy(ALICE, resolved.conversation_id)
    assert copy["unread_count"] == 1
    assert copy["last_message"] == "hey"


async def test_resolve_eagerly_creates_peer_copy(conversation_service, repos):
    resolved = await conversation_service.resolve_or_create(ALICE, BOB)

    peer = await repos.conversations.get_copy(BOB, resolved.conversation_id)
    assert peer is not None
    assert peer["members"] == [BOB, ALICE]
    assert peer["with_user"]["display_name"] == "Alice"


async def test_peer_copy_failure_is_swallowed(conversation_service, repos, db, monkeypatch):
    collection = db["chats"]
    original_insert = collection.insert_one

    async def insert_one(document, *args, **kwargs):
        if document["owner_id"] == BOB:
            raise OperationFailure("not allowed to write into another user's space")
        return await original_insert(document, *args, **kwargs)

    monkeypatch.setattr(collection, "insert_one", insert_one)

    resolved = await conversation_service.resolve_or_create(ALICE, BOB)

    assert resolved.conversation_id == "alice__bob"
    assert await repos.conversations.get_copy(ALICE, "alice__bob") is not None
    assert await repos.conversations.get_copy(BOB, "alice__bob") is None


async def test_eager_peer_copy_can_be_disabled(repos):
    service = ConversationService(repos.conversations, repos.users, eager_peer_copy=False)

    await service.resolve_or_create(ALICE, BOB)

    assert await repos.conversations.get_copy(BOB, "alice__bob") is None


async def test_self_conversation_is_rejected_before_any_write(conversation_service, db):
    with pytest.raises(InvalidParticipants):
        await conversation_service.resolve_or_create(ALICE, ALICE)
    assert await db["chats"].count_documents({}) == 0


async def test_unknown_participant_is_rejected_before_any_write(conversation_service, db):
    with pytest.raises(ParticipantNotFound) as excinfo:
        await conversation_service.resolve_or_create(ALICE, "ghost")
    assert excinfo.value.user_id == "ghost"
    assert await db["chats"].count_documents({}) == 0


async def test_list_conversations_most_recent_first(conversation_service, chat_service):
    await conversation_service.resolve_or_create(ALICE, BOB)
    await conversation_service.resolve_or_create(ALICE, CAROL)
    await chat_service.send_message("alice__bob", ALICE, BOB, "older")
    await chat_service.send_message("alice__carol", ALICE, CAROL, "newer")

    items, next_cursor = await conversation_service.list_conversations(ALICE)

    assert [it.conversation_id for it in items] == ["alice__carol", "alice__bob"]
    assert items[0].last_message == "newer"
    assert next_cursor is None


async def test_refresh_participant_snapshot(conversation_service, repos):
    await conversation_service.resolve_or_create(ALICE, BOB)
    await repos.users.upsert_profile(BOB, display_name="Robert", photo_url="https://img.example/bob.png")

    snapshot = await conversation_service.refresh_participant_snapshot(ALICE, "alice__bob")

    assert snapshot.name == "Robert"
    copy = await repos.conversations.get_copy(ALICE, "alice__bob")
    assert copy["with_user"] == {"id": BOB, "display_name": "Robert", "photo_url": "https://img.example/bob.png"}
