import pytest

from src.schemas.models import ChatMessage
from src.utils.chat_store import ChatRepository, is_visible_to, parse_timestamp
from src.utils.errors import NotFoundError, StorageUnavailableError, ValidationError
from src.utils.object_store import ObjectStore


@pytest.fixture
def store(tmp_path):
    store = ObjectStore(tmp_path / "history.sqlite")
    store.migrate()
    return store


@pytest.fixture
def repo(store):
    return ChatRepository(store)


def _messages():
    return [
        {"id": "m1", "role": "user", "content": "hi"},
        {"id": "m2", "role": "assistant", "content": "hello", "annotations": ["kept"]},
        {"id": "m3", "role": "user", "content": "bye"},
    ]


@pytest.mark.asyncio
async def test_save_and_get_by_id_or_slug(repo):
    await repo.save("5", _messages(), None, url_id="hello-chat", description="Greeting")

    by_id = await repo.get("5", None)
    by_slug = await repo.get("hello-chat", None)

    assert by_id is not None and by_slug is not None
    assert by_id.id == by_slug.id == "5"
    assert [m.id for m in by_id.messages] == ["m1", "m2", "m3"]
    assert by_id.messages[1].model_dump()["annotations"] == ["kept"]
    parse_timestamp(by_id.timestamp)


@pytest.mark.asyncio
async def test_owned_chat_is_hidden_from_other_callers(repo):
    await repo.save("1", _messages(), "u1", url_id="1")
    await repo.save("2", _messages(), None, url_id="2")

    assert await repo.get("1", "u2") is None
    assert await repo.get("1", None) is None
    assert (await repo.get("1", "u1")).user_id == "u1"
    assert await repo.get("2", "u2") is not None
    assert await repo.get("2", None) is not None

    assert {chat.id for chat in await repo.list_all("u2")} == {"2"}
    assert {chat.id for chat in await repo.list_all("u1")} == {"1", "2"}


@pytest.mark.asyncio
async def test_list_all_is_newest_first(repo):
    await repo.save("1", [], None, url_id="1", timestamp="2024-01-01T00:00:00Z")
    await repo.save("2", [], None, url_id="2", timestamp="2024-03-01T00:00:00Z")
    await repo.save("3", [], None, url_id="3", timestamp="2024-02-01T00:00:00+00:00")

    assert [chat.id for chat in await repo.list_all(None)] == ["2", "3", "1"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "timestamp",
    [
        "not-a-date",
        "   ",
        "2024-13-45T00:00:00",
        "Mon, 32 Foo 2024 00:00:00 +0000",
        "Mon, 1 Jan 99999999999999999999 00:00:00 +0000",
    ],
)
async def test_save_rejects_bad_timestamp_without_touching_record(repo, timestamp):
    await repo.save("1", _messages(), None, url_id="1", description="original")

    with pytest.raises(ValidationError):
        await repo.save("1", [], None, url_id="1", description="changed", timestamp=timestamp)

    chat = await repo.get("1", None)
    assert chat.description == "original"
    assert len(chat.messages) == 3


@pytest.mark.asyncio
async def test_save_replaces_whole_record(repo):
    await repo.save("1", _messages(), "u1", url_id="1", description="first")
    await repo.save("1", _messages()[:1], "u1")

    chat = await repo.get("1", "u1")
    assert chat.description is None
    assert chat.url_id is None
    assert len(chat.messages) == 1


@pytest.mark.asyncio
async def test_remove_deletes_and_tolerates_missing(repo):
    await repo.save("1", _messages(), None, url_id="1")
    await repo.remove("1")
    await repo.remove("1")
    assert await repo.get("1", None) is None


@pytest.mark.asyncio
async def test_fork_keeps_prefix_through_message(repo):
    await repo.save("5", _messages(), None, url_id="5", description="Trip plans")

    url_id = await repo.fork("5", "m2", None)

    fork = await repo.get(url_id, None)
    assert url_id == "6"
    assert [m.id for m in fork.messages] == ["m1", "m2"]
    assert fork.description == "Trip plans (fork)"
    assert fork.user_id is None
    original = await repo.get("5", None)
    assert len(original.messages) == 3


@pytest.mark.asyncio
async def test_fork_without_description_and_missing_targets(repo):
    await repo.save("1", _messages(), None, url_id="1")

    url_id = await repo.fork("1", "m1", None)
    assert (await repo.get(url_id, None)).description == "Forked chat"

    with pytest.raises(NotFoundError):
        await repo.fork("1", "missing", None)
    with pytest.raises(NotFoundError):
        await repo.fork("404", "m1", None)


@pytest.mark.asyncio
async def test_fork_respects_ownership(repo):
    await repo.save("1", _messages(), "u1", url_id="1")
    with pytest.raises(NotFoundError):
        await repo.fork("1", "m1", "u2")


@pytest.mark.asyncio
async def test_duplicate_titles(repo):
    await repo.save("1", _messages(), None, url_id="1")
    await repo.save("2", _messages(), None, url_id="2", description="Notes")

    untitled = await repo.get(await repo.duplicate("1", None), None)
    titled = await repo.get(await repo.duplicate("2", None), None)

    assert untitled.description == "Chat (copy)"
    assert titled.description == "Notes (copy)"
    assert [m.id for m in untitled.messages] == ["m1", "m2", "m3"]


@pytest.mark.asyncio
async def test_create_from_messages_avoids_slug_collision(repo):
    # A chat already squats on the slug the next id would take.
    await repo.save("1", [], None, url_id="2")

    url_id = await repo.create_from_messages("New", [ChatMessage(id="a", role="user", content="x")])

    assert url_id == "2-2"
    chat = await repo.get(url_id, None)
    assert chat.id == "2"
    assert chat.user_id is None


@pytest.mark.asyncio
async def test_update_description(repo):
    await repo.save("1", _messages(), "u1", url_id="slug", timestamp="2024-01-01T00:00:00+00:00")

    with pytest.raises(ValidationError):
        await repo.update_description("1", "   ", "u1")
    with pytest.raises(NotFoundError):
        await repo.update_description("1", "Renamed", "u2")

    updated = await repo.update_description("slug", "Renamed", "u1")
    stored = await repo.get("1", "u1")
    assert updated.description == stored.description == "Renamed"
    assert stored.url_id == "slug"
    assert stored.user_id == "u1"
    assert stored.timestamp == "2024-01-01T00:00:00+00:00"
    assert len(stored.messages) == 3


@pytest.mark.asyncio
async def test_export_and_import(repo):
    await repo.save("1", _messages(), None, url_id="1", description="Saved")

    exported = await repo.export("1", None)
    url_id = await repo.import_chat(exported.model_dump(mode="json"))

    imported = await repo.get(url_id, None)
    assert imported.id == "2"
    assert imported.description == "Saved"
    assert [m.id for m in imported.messages] == ["m1", "m2", "m3"]


@pytest.mark.asyncio
async def test_repository_without_store_degrades():
    repo = ChatRepository(None)

    assert await repo.list_all("u1") == []
    assert await repo.get("1", "u1") is None
    await repo.save("1", _messages(), "u1")
    await repo.remove("1")
    with pytest.raises(StorageUnavailableError):
        await repo.create_from_messages("x", [])
    with pytest.raises(NotFoundError):
        await repo.duplicate("1", "u1")


def test_visibility_rule():
    from src.schemas.models import ChatHistoryItem

    owned = ChatHistoryItem(id="1", user_id="u1")
    ownerless = ChatHistoryItem(id="2")
    assert is_visible_to(owned, "u1")
    assert not is_visible_to(owned, "u2")
    assert not is_visible_to(owned, None)
    assert is_visible_to(ownerless, None)


@pytest.mark.asyncio
async def test_update_description_reports_missing_chat_before_blank_text(repo):
    with pytest.raises(NotFoundError):
        await repo.update_description("404", "  ", None)

    await repo.save("1", _messages(), None, url_id="1", description="kept")
    with pytest.raises(ValidationError):
        await repo.update_description("1", "", None)
    assert (await repo.get("1", None)).description == "kept"


def test_parse_timestamp_accepts_rfc2822_and_rejects_overflow():
    parsed = parse_timestamp("Mon, 01 Jan 2024 10:00:00 +0000")
    assert parsed.year == 2024 and parsed.tzinfo is not None

    with pytest.raises(ValidationError):
        parse_timestamp("Mon, 1 Jan 99999999999999999999 00:00:00 +0000")
