from pymongo.errors import OperationFailure

from tests.conftest import ALICE, BOB


CONVERSATION = "alice__bob"


async def test_mark_read_resets_only_the_counter(conversation_service, chat_service, make_processor, read_state, repos):
    await conversation_service.resolve_or_create(ALICE, BOB)
    await chat_service.send_message(CONVERSATION, ALICE, BOB, "hi")
    await make_processor(BOB).run_once()
    before = await repos.messages.list_mailbox(BOB, CONVERSATION)

    assert await read_state.mark_read(CONVERSATION, BOB) is True

    copy = await repos.conversations.get_copy(BOB, CONVERSATION)
    assert copy["unread_count"] == 0
    assert copy["last_message"] == "hi"
    assert await repos.messages.list_mailbox(BOB, CONVERSATION) == before


async def test_mark_read_touches_only_own_copy(conversation_service, chat_service, make_processor, read_state, repos):
    await conversation_service.resolve_or_create(ALICE, BOB)
    await chat_service.send_message(CONVERSATION, BOB, ALICE, "ping")
    await make_processor(ALICE).run_once()

    await read_state.mark_read(CONVERSATION, BOB)

    assert (await repos.conversations.get_copy(ALICE, CONVERSATION))["unread_count"] == 1


async def test_mark_read_without_copy_returns_false(read_state):
    assert await read_state.mark_read(CONVERSATION, BOB) is False
    assert await read_state.mark_read("", BOB) is False


async def test_mark_read_failure_is_swallowed(conversation_service, read_state, db, monkeypatch):
    await conversation_service.resolve_or_create(ALICE, BOB)

    async def denied(*args, **kwargs):
        raise OperationFailure("denied")

    monkeypatch.setattr(db["chats"], "update_one", denied)

    assert await read_state.mark_read(CONVERSATION, ALICE) is False
