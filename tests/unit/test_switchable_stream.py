import asyncio

import pytest

from src.utils.errors import SegmentLimitError, StreamClosedError
from src.utils.switchable_stream import StreamState, SwitchableStream


async def _source(*items):
    for item in items:
        yield item


async def _ticks(count: int = 5) -> None:
    for _ in range(count):
        await asyncio.sleep(0)


class CountingSource:
    def __init__(self, *items):
        self.items = list(items)
        self.pulled = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.items:
            raise StopAsyncIteration
        self.pulled += 1
        return self.items.pop(0)

    async def aclose(self):
        self.closed = True


async def _drain(iterator):
    return [chunk async for chunk in iterator]


@pytest.mark.asyncio
async def test_switch_then_close_yields_both_sources_in_order():
    stream = SwitchableStream()
    stream.switch_source(_source("a1", "a2-unread"))
    it = stream.__aiter__()

    first = await it.__anext__()
    stream.switch_source(_source("b1", "b2"))
    stream.close()
    rest = await _drain(it)

    assert b"".join([first] + rest) == b"a1b1b2"
    assert stream.switches == 1
    assert stream.state is StreamState.CLOSED


@pytest.mark.asyncio
async def test_close_without_source_ends_immediately():
    stream = SwitchableStream()
    stream.close()

    assert await _drain(stream) == []
    with pytest.raises(StreamClosedError):
        stream.switch_source(_source("late"))


@pytest.mark.asyncio
async def test_segment_limit_rejects_switch_before_reading():
    stream = SwitchableStream(max_segments=1)
    stream.switch_source(_source("a"))
    stream.switch_source(_source("b"))
    rejected = CountingSource("c")

    assert not stream.can_switch()
    with pytest.raises(SegmentLimitError):
        stream.switch_source(rejected)

    stream.close()
    assert b"".join(await _drain(stream)) == b"b"
    assert rejected.pulled == 0
    assert stream.switches == 1


@pytest.mark.asyncio
async def test_state_transitions():
    stream = SwitchableStream()
    assert stream.state is StreamState.IDLE

    stream.switch_source(_source("a1"))
    assert stream.state is StreamState.PIPING
    it = stream.__aiter__()
    assert await it.__anext__() == b"a1"

    consumer = asyncio.create_task(_drain(it))
    await _ticks()
    assert stream.state is StreamState.SWITCHING

    stream.switch_source(_source("b1"))
    assert stream.state is StreamState.PIPING
    stream.close()

    assert await consumer == [b"b1"]
    assert stream.state is StreamState.CLOSED
    assert stream.switches == 1


@pytest.mark.asyncio
async def test_reads_only_when_consumer_pulls():
    source = CountingSource("a", "b", "c")
    stream = SwitchableStream()
    stream.switch_source(source)
    it = stream.__aiter__()

    await _ticks()
    assert source.pulled == 0

    assert await it.__anext__() == b"a"
    await _ticks()
    assert source.pulled == 1

    stream.close()
    assert await _drain(it) == [b"b", b"c"]


@pytest.mark.asyncio
async def test_source_error_ends_output_with_error():
    async def broken():
        yield "ok"
        raise RuntimeError("upstream died")

    stream = SwitchableStream()
    stream.switch_source(broken())
    received = []

    with pytest.raises(RuntimeError, match="upstream died"):
        async for chunk in stream:
            received.append(chunk)

    assert received == [b"ok"]
    assert stream.state is StreamState.CLOSED
    assert isinstance(stream.error, RuntimeError)


@pytest.mark.asyncio
async def test_fail_terminates_output():
    stream = SwitchableStream()
    stream.switch_source(_source("a1", "a2"))
    it = stream.__aiter__()
    assert await it.__anext__() == b"a1"

    stream.fail(ValueError("boom"))

    with pytest.raises(ValueError, match="boom"):
        await it.__anext__()
    with pytest.raises(StreamClosedError):
        stream.switch_source(_source("b1"))


@pytest.mark.asyncio
async def test_late_chunk_from_replaced_source_is_dropped():
    gate = asyncio.Event()

    async def slow():
        yield "a1"
        await gate.wait()
        yield "late"

    stream = SwitchableStream()
    stream.switch_source(slow())
    it = stream.__aiter__()
    assert await it.__anext__() == b"a1"

    consumer = asyncio.create_task(_drain(it))
    await _ticks()
    stream.switch_source(_source("b1"))
    stream.close()
    gate.set()

    assert await consumer == [b"b1"]
    await _ticks()


@pytest.mark.asyncio
async def test_replaced_source_is_closed():
    old = CountingSource("a1", "a2")
    stream = SwitchableStream()
    stream.switch_source(old)
    it = stream.__aiter__()
    assert await it.__anext__() == b"a1"

    stream.switch_source(_source("b1"))
    await _ticks()

    assert old.closed
    assert old.pulled == 1
    stream.close()
    assert await _drain(it) == [b"b1"]


@pytest.mark.asyncio
async def test_mixed_chunk_types_are_encoded():
    stream = SwitchableStream()
    stream.switch_source(_source("é", b"\x00", bytearray(b"z"), 7))
    stream.close()

    assert b"".join(await _drain(stream)) == "é".encode("utf-8") + b"\x00z7"
