from __future__ import annotations

from typing import Any, AsyncIterable, Awaitable, Callable, Dict, List, Sequence

from src.utils.env import read_int_env
from src.utils.errors import SegmentLimitError
from src.utils.llm_client import open_completion_stream, to_provider_messages
from src.utils.logging import get_logger
from src.utils.switchable_stream import SwitchableStream

log = get_logger(__name__)

DEFAULT_MAX_TOKENS = 8192
DEFAULT_MAX_RESPONSE_SEGMENTS = 2

CONTINUE_PROMPT = (
    "Continue your prior response. IMPORTANT: Immediately begin from where you left off "
    "without any interruptions. Do not repeat any content."
)

StreamOpener = Callable[..., Awaitable[AsyncIterable[str]]]


def max_tokens() -> int:
    return read_int_env("MAX_TOKENS", DEFAULT_MAX_TOKENS)


def max_response_segments() -> int:
    return read_int_env("MAX_RESPONSE_SEGMENTS", DEFAULT_MAX_RESPONSE_SEGMENTS, minimum=0)


async def stream_chat(
    messages: Sequence[Any],
    *,
    max_segments: int | None = None,
    token_limit: int | None = None,
    opener: StreamOpener | None = None,
) -> SwitchableStream:
    """Open the first segment and return the stream the response should read.

    Whenever a segment stops with ``finish_reason == "length"`` the partial
    answer and a continue prompt are appended to the conversation and the
    stream is switched to a fresh completion, at most ``max_segments`` times.
    Going past that bound ends the output with :class:`SegmentLimitError`.
    """

    opener = opener or open_completion_stream
    segments = max_response_segments() if max_segments is None else max_segments
    tokens = max_tokens() if token_limit is None else token_limit
    conversation: List[Dict[str, Any]] = to_provider_messages(messages)
    stream = SwitchableStream(max_segments=segments)

    async def on_finish(text: str, finish_reason: str | None) -> None:
        if finish_reason != "length":
            stream.close()
            return
        if not stream.can_switch():
            raise SegmentLimitError(
                f"Cannot continue message: maximum segments reached ({segments})"
            )
        log.info(
            "chat_segment_truncated",
            max_tokens=tokens,
            switches_left=segments - stream.switches,
        )
        conversation.append({"role": "assistant", "content": text})
        conversation.append({"role": "user", "content": CONTINUE_PROMPT})
        continuation = await opener(conversation, max_tokens=tokens, on_finish=on_finish)
        stream.switch_source(continuation)

    first = await opener(conversation, max_tokens=tokens, on_finish=on_finish)
    stream.switch_source(first)
    return stream
