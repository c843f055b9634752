"""
Unit tests for the Azure Table thread store.

Runs the store against an in-memory table client that applies the same
PartitionKey / RowKey range semantics as Table Storage.
"""

import json

import pytest

from ragchat.core.errors import DuplicateThreadError, ThreadNotFoundError
from ragchat.models.threads import RetrievalResult
from ragchat.services.thread_store import meta_row_key, turn_row_key


async def _thread_with_turns(store, count, user_id="user-1"):
    metadata = await store.create_thread(user_id, "first question")
    turns = []
    for i in range(1, count + 1):
        turns.append(await store.append_turn(user_id, metadata, f"q{i}", f"a{i}", []))
    return metadata, turns


@pytest.mark.asyncio
async def test_create_thread_sets_title_and_timestamps(thread_store, table):
    metadata = await thread_store.create_thread("user-1", "What is X?")

    assert metadata.title == "What is X?"
    assert metadata.created_at == metadata.updated_at
    entity = table.entities[("user-1", meta_row_key(metadata))]
    assert entity["ThreadId"] == metadata.thread_id


@pytest.mark.asyncio
async def test_get_thread_returns_turns_newest_first(thread_store):
    metadata, _ = await _thread_with_turns(thread_store, 3)

    thread = await thread_store.get_thread("user-1", metadata.thread_id)

    assert thread.metadata.thread_id == metadata.thread_id
    assert [t.user_question for t in thread.turns] == ["q3", "q2", "q1"]


@pytest.mark.asyncio
async def test_pagination_before_cursor(thread_store):
    """15 turns, limit 10, before turn 12 -> turns 11 down to 2."""
    metadata, turns = await _thread_with_turns(thread_store, 15)

    thread = await thread_store.get_thread(
        "user-1", metadata.thread_id, before=turns[11].created_at, limit=10
    )

    assert [t.user_question for t in thread.turns] == [f"q{i}" for i in range(11, 1, -1)]


@pytest.mark.asyncio
async def test_limit_caps_turns(thread_store):
    metadata, _ = await _thread_with_turns(thread_store, 5)

    thread = await thread_store.get_thread("user-1", metadata.thread_id, limit=2)

    assert [t.user_question for t in thread.turns] == ["q5", "q4"]


@pytest.mark.asyncio
async def test_append_turn_updates_metadata(thread_store):
    metadata, turns = await _thread_with_turns(thread_store, 1)

    thread = await thread_store.get_thread("user-1", metadata.thread_id)

    assert thread.metadata.updated_at == turns[0].created_at
    assert thread.metadata.created_at == metadata.created_at


@pytest.mark.asyncio
async def test_appended_turn_read_back_once_and_first(thread_store):
    metadata, _ = await _thread_with_turns(thread_store, 2)

    await thread_store.append_turn("user-1", metadata, "new q", "new a", [])
    thread = await thread_store.get_thread("user-1", metadata.thread_id)

    questions = [t.user_question for t in thread.turns]
    assert questions.count("new q") == 1
    assert questions[0] == "new q"


@pytest.mark.asyncio
async def test_turn_references_rebuilt_from_results(thread_store, table):
    metadata = await thread_store.create_thread("user-1", "q")
    results = [
        RetrievalResult(text="p1", source_id="https://s/a.pdf", page=2),
        RetrievalResult(text="p2", source_id="https://s/a.pdf"),
    ]
    turn = await thread_store.append_turn(
        "user-1", metadata, "q", "a", results, system_template="SYSTEM"
    )

    entity = table.entities[("user-1", turn_row_key(metadata.thread_id, turn.created_at))]
    assert entity["SystemTemplate"] == "SYSTEM"
    assert json.loads(entity["RetrievalResults"])[0]["sourceId"] == "https://s/a.pdf"

    thread = await thread_store.get_thread("user-1", metadata.thread_id)
    reference = thread.turns[0].references[0]
    assert reference.filename == "a.pdf"
    assert [h.text for h in reference.hits] == ["p1", "p2"]


@pytest.mark.asyncio
async def test_missing_thread_raises_not_found(thread_store):
    with pytest.raises(ThreadNotFoundError):
        await thread_store.get_thread("user-1", "does-not-exist")


@pytest.mark.asyncio
async def test_thread_of_other_user_not_found(thread_store):
    metadata = await thread_store.create_thread("user-1", "private")

    with pytest.raises(ThreadNotFoundError):
        await thread_store.get_thread("user-2", metadata.thread_id)


@pytest.mark.asyncio
async def test_duplicate_metadata_raises(thread_store, table):
    metadata = await thread_store.create_thread("user-1", "q")
    copy = dict(table.entities[("user-1", meta_row_key(metadata))])
    copy["RowKey"] = "meta#0000000000001#" + metadata.thread_id
    table.entities[("user-1", copy["RowKey"])] = copy

    with pytest.raises(DuplicateThreadError) as exc_info:
        await thread_store.get_thread("user-1", metadata.thread_id)
    assert exc_info.value.count == 2


@pytest.mark.asyncio
async def test_turns_of_other_threads_excluded(thread_store):
    first, _ = await _thread_with_turns(thread_store, 2)
    second = await thread_store.create_thread("user-1", "other")
    await thread_store.append_turn("user-1", second, "other q", "other a", [])

    thread = await thread_store.get_thread("user-1", first.thread_id)

    assert [t.user_question for t in thread.turns] == ["q2", "q1"]


@pytest.mark.asyncio
async def test_list_threads_most_recently_updated_first(thread_store):
    older = await thread_store.create_thread("user-1", "older")
    newer = await thread_store.create_thread("user-1", "newer")
    await thread_store.append_turn("user-1", older, "q", "a", [])
    await thread_store.create_thread("user-2", "someone else")

    threads = await thread_store.list_threads("user-1")

    assert [t.thread_id for t in threads] == [older.thread_id, newer.thread_id]


@pytest.mark.asyncio
async def test_timestamps_are_written_as_int64(thread_store, table):
    metadata = await thread_store.create_thread("user-1", "q")
    turn = await thread_store.append_turn("user-1", metadata, "q", "a", [])

    meta = table.entities[("user-1", meta_row_key(metadata))]
    row = table.entities[("user-1", turn_row_key(metadata.thread_id, turn.created_at))]
    for entity, name in [(meta, "CreatedAt"), (meta, "UpdatedAt"), (row, "CreatedAt")]:
        assert entity[f"{name}@odata.type"] == "Edm.Int64"
        assert int(entity[name]) > 2**31


@pytest.mark.asyncio
async def test_reads_int64_timestamps_from_service_payload(thread_store, table):
    table.entities[("user-1", "meta#1700000000000#t-1")] = {
        "PartitionKey": "user-1",
        "RowKey": "meta#1700000000000#t-1",
        "ThreadId": "t-1",
        "Title": "What is X?",
        "CreatedAt@odata.type": "Edm.Int64",
        "CreatedAt": "1700000000000",
        "UpdatedAt@odata.type": "Edm.Int64",
        "UpdatedAt": "1700000000500",
    }

    thread = await thread_store.get_thread("user-1", "t-1")

    assert thread.metadata.created_at == 1_700_000_000_000
    assert thread.metadata.updated_at == 1_700_000_000_500


@pytest.mark.asyncio
async def test_negative_cursor_returns_no_turns(thread_store):
    metadata, _ = await _thread_with_turns(thread_store, 3)

    thread = await thread_store.get_thread("user-1", metadata.thread_id, before=-1)

    assert thread.turns == []
