"""One readable byte stream fed by a sequence of swappable sources.

The HTTP response holds on to a single :class:`SwitchableStream`; whoever
produces model output attaches the first source and, when a segment is cut
short, switches to the continuation. The response sees the concatenation of
every attached source in attach order.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Set

from src.utils.errors import SegmentLimitError, StreamClosedError
from src.utils.logging import get_logger

log = get_logger(__name__)

_EXHAUSTED = object()


class StreamState(str, Enum):
    IDLE = "idle"
    PIPING = "piping"
    SWITCHING = "switching"
    CLOSED = "closed"


async def _read(source: AsyncIterator[Any]) -> Any:
    try:
        return await source.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


class SwitchableStream:
    """State machine: IDLE -> PIPING <-> SWITCHING -> CLOSED.

    ``switches`` counts continuations, so attaching the very first source does
    not increment it. When ``max_segments`` is set, a switch attempted with
    ``switches >= max_segments`` raises :class:`SegmentLimitError` and the new
    source is never read.
    """

    def __init__(self, *, max_segments: int | None = None, encoding: str = "utf-8") -> None:
        self.state = StreamState.IDLE
        self.switches = 0
        self.max_segments = max_segments
        self.encoding = encoding
        self.error: BaseException | None = None
        self._source: AsyncIterator[Any] | None = None
        self._pending: asyncio.Task | None = None
        self._generation = 0
        self._changed = asyncio.Event()
        self._closing = False
        self._retiring: Set[asyncio.Task] = set()

    @property
    def closed(self) -> bool:
        return self.state is StreamState.CLOSED or self._closing

    def can_switch(self) -> bool:
        return self.max_segments is None or self.switches < self.max_segments

    def switch_source(self, source: AsyncIterable[Any]) -> None:
        if self.state is StreamState.CLOSED or self._closing:
            raise StreamClosedError("Cannot attach a source to a closed stream")
        continuing = self.state is not StreamState.IDLE
        if continuing and not self.can_switch():
            log.warning("segment_limit_reached", switches=self.switches, max_segments=self.max_segments)
            raise SegmentLimitError(
                f"Cannot continue message: maximum segments reached ({self.max_segments})"
            )
        self._detach()
        if continuing:
            self.switches += 1
        self._source = source.__aiter__()
        self._generation += 1
        self.state = StreamState.PIPING
        self._changed.set()
        log.debug("stream_switched", switches=self.switches, generation=self._generation)

    def close(self) -> None:
        """Signal end-of-stream once the active source (if any) has drained."""

        if self.state is StreamState.CLOSED or self._closing:
            return
        self._closing = True
        if self._source is None:
            self._terminate()
        else:
            self._changed.set()

    def _terminate(self) -> None:
        if self.state is StreamState.CLOSED:
            return
        self._detach()
        self._closing = True
        self.state = StreamState.CLOSED
        self._changed.set()
        log.debug("stream_closed", switches=self.switches, failed=self.error is not None)

    def fail(self, exc: BaseException) -> None:
        """End the output with ``exc`` instead of a clean end-of-stream."""

        if self.state is StreamState.CLOSED:
            return
        self.error = exc
        log.error("stream_failed", switches=self.switches, error=str(exc), error_type=type(exc).__name__)
        self._terminate()

    def _detach(self) -> None:
        source, pending = self._source, self._pending
        self._source = None
        self._pending = None
        if source is None:
            return
        task = asyncio.get_running_loop().create_task(self._retire(source, pending))
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)

    async def _retire(self, source: AsyncIterator[Any], pending: asyncio.Task | None) -> None:
        # The old source is unsubscribed, not torn down mid-read: let any
        # in-flight read settle, drop its result, then ask it to close.
        if pending is not None:
            try:
                await pending
            except Exception as exc:
                log.warning("stream_detached_read_failed", error=str(exc))
        aclose = getattr(source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as exc:
            log.warning("stream_detached_close_failed", error=str(exc))

    def _encode(self, chunk: Any) -> bytes:
        if isinstance(chunk, bytes):
            return chunk
        if isinstance(chunk, (bytearray, memoryview)):
            return bytes(chunk)
        return str(chunk).encode(self.encoding)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._pump()

    async def _pump(self) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        try:
            while self.state is not StreamState.CLOSED:
                source = self._source
                if source is None:
                    self._changed.clear()
                    await self._changed.wait()
                    continue

                generation = self._generation
                if self._pending is None:
                    self._pending = loop.create_task(_read(source))
                pending = self._pending
                self._changed.clear()
                waiter = loop.create_task(self._changed.wait())
                try:
                    await asyncio.wait({pending, waiter}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    waiter.cancel()

                if generation != self._generation or self.state is StreamState.CLOSED:
                    continue
                if not pending.done():
                    continue
                self._pending = None
                try:
                    chunk = pending.result()
                except Exception as exc:
                    self._source = None
                    self.fail(exc)
                    break
                if chunk is _EXHAUSTED:
                    self._source = None
                    if self._closing:
                        self._terminate()
                    else:
                        self.state = StreamState.SWITCHING
                    continue
                data = self._encode(chunk)
                if data:
                    yield data
        finally:
            if self.state is not StreamState.CLOSED:
                log.info("stream_consumer_detached", switches=self.switches)
                self._terminate()
        if self.error is not None:
            raise self.error
