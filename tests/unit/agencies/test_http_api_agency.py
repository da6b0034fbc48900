import pytest

from src.agencies.http_api import ChatAPIAgency
from src.utils.switchable_stream import SwitchableStream


@pytest.mark.asyncio
async def test_open_stream_invokes_handler():
    captured = {}
    stream = SwitchableStream()

    async def fake_stream(messages):
        captured["messages"] = messages
        return stream

    agency = ChatAPIAgency(stream_handler=fake_stream)
    messages = [{"role": "user", "content": "Hello there"}]

    result = await agency.open_stream(messages)

    assert result is stream
    assert captured["messages"] is messages


def test_record_and_lookup_invoke_handlers():
    captured = {}

    def fake_record(project_id, user_id, messages):
        captured["record"] = (project_id, user_id, messages)
        return "msg-1"

    def fake_lookup(project_id, user_id):
        captured["lookup"] = (project_id, user_id)
        return {"id": project_id, "user_id": user_id} if user_id == "u1" else None

    agency = ChatAPIAgency(record_handler=fake_record, project_lookup=fake_lookup)
    messages = [{"role": "user", "content": "hi"}]

    assert agency.record("p1", "u1", messages) == "msg-1"
    assert captured["record"] == ("p1", "u1", messages)
    assert agency.find_project("p1", "u1") == {"id": "p1", "user_id": "u1"}
    assert agency.find_project("p1", "u2") is None
    assert captured["lookup"] == ("p1", "u2")
