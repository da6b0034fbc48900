import pytest

from src.agents import chat_agent
from src.agents.chat_agent import CONTINUE_PROMPT, stream_chat
from src.utils.errors import SegmentLimitError


def _completion(chunks, finish_reason, on_finish):
    async def run():
        text = ""
        for chunk in chunks:
            text += chunk
            yield chunk
        if on_finish is not None:
            await on_finish(text, finish_reason)

    return run()


class FakeOpener:
    """Hands out scripted segments and records the conversation each one was opened with."""

    def __init__(self, *segments):
        self.segments = list(segments)
        self.calls = []

    async def __call__(self, conversation, *, max_tokens=None, on_finish=None):
        self.calls.append({"conversation": [dict(m) for m in conversation], "max_tokens": max_tokens})
        chunks, finish_reason = self.segments.pop(0)
        return _completion(chunks, finish_reason, on_finish)


MESSAGES = [{"id": "m1", "role": "user", "content": "Tell me a story"}]


@pytest.mark.asyncio
async def test_single_segment_closes_stream():
    opener = FakeOpener((["Hello", " world"], "stop"))

    stream = await stream_chat(MESSAGES, max_segments=2, token_limit=100, opener=opener)
    body = b"".join([chunk async for chunk in stream])

    assert body == b"Hello world"
    assert stream.switches == 0
    assert opener.calls == [
        {"conversation": [{"role": "user", "content": "Tell me a story"}], "max_tokens": 100}
    ]


@pytest.mark.asyncio
async def test_truncated_segment_continues_with_prompt():
    opener = FakeOpener((["part one "], "length"), (["part two"], "stop"))

    stream = await stream_chat(MESSAGES, max_segments=2, token_limit=50, opener=opener)
    body = b"".join([chunk async for chunk in stream])

    assert body == b"part one part two"
    assert stream.switches == 1
    continuation = opener.calls[1]["conversation"]
    assert continuation[-2] == {"role": "assistant", "content": "part one "}
    assert continuation[-1] == {"role": "user", "content": CONTINUE_PROMPT}


@pytest.mark.asyncio
async def test_exceeding_segment_limit_fails_after_partial_output():
    opener = FakeOpener((["a"], "length"), (["b"], "length"), (["c"], "stop"))

    stream = await stream_chat(MESSAGES, max_segments=1, token_limit=10, opener=opener)
    received = []
    with pytest.raises(SegmentLimitError):
        async for chunk in stream:
            received.append(chunk)

    assert b"".join(received) == b"ab"
    assert len(opener.calls) == 2
    assert stream.switches == 1


@pytest.mark.asyncio
async def test_limits_default_to_environment(monkeypatch):
    monkeypatch.setenv("MAX_TOKENS", "256")
    monkeypatch.setenv("MAX_RESPONSE_SEGMENTS", "0")
    opener = FakeOpener((["only"], "length"))

    stream = await stream_chat(MESSAGES, opener=opener)
    received = []
    with pytest.raises(SegmentLimitError):
        async for chunk in stream:
            received.append(chunk)

    assert received == [b"only"]
    assert opener.calls[0]["max_tokens"] == 256


def test_limit_helpers_fall_back_on_bad_values(monkeypatch):
    monkeypatch.setenv("MAX_TOKENS", "lots")
    monkeypatch.delenv("MAX_RESPONSE_SEGMENTS", raising=False)

    assert chat_agent.max_tokens() == chat_agent.DEFAULT_MAX_TOKENS
    assert chat_agent.max_response_segments() == chat_agent.DEFAULT_MAX_RESPONSE_SEGMENTS
