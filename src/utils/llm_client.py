from __future__ import annotations

import json
import os
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from src.utils.env import read_int_env
from src.utils.errors import ProviderAuthError
from src.utils.logging import get_logger

log = get_logger(__name__)

_DEFAULT_BASE = "https://api.openai.com/v1"
_DEFAULT_CHAT_MODEL = "gpt-4o-mini"

FinishHook = Callable[[str, str | None], Awaitable[None]]


def _base_url() -> str:
    return os.getenv("LLM_BASE", _DEFAULT_BASE).rstrip("/")


def _api_key() -> str | None:
    return os.getenv("LLM_API_KEY")


def _model() -> str:
    return os.getenv("LLM_MODEL", _DEFAULT_CHAT_MODEL)


def _headers() -> Dict[str, str]:
    key = _api_key()
    if not key:
        raise ProviderAuthError("API key is not configured")
    return {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}


def _open_max_attempts() -> int:
    return read_int_env("LLM_OPEN_MAX_ATTEMPTS", 3)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return isinstance(exc, httpx.TransportError)


def parse_sse_line(line: str) -> Dict[str, Any] | None:
    """Decode one ``data:`` line of an OpenAI-compatible event stream.

    Returns ``None`` for blank lines, comments, ``[DONE]`` and undecodable data.
    """

    if not line or not line.startswith("data:"):
        return None
    raw = line[5:].strip()
    if not raw or raw == "[DONE]":
        return None
    try:
        event = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


class CompletionStream:
    """Async iterator over the text deltas of one streamed completion.

    ``text`` accumulates everything yielded so far; ``finish_reason`` is set
    from the last event that carried one. After the final delta the optional
    ``on_finish`` hook is awaited with both, once the HTTP response is closed.
    """

    def __init__(
        self,
        response: httpx.Response,
        resources: AsyncExitStack,
        *,
        on_finish: FinishHook | None = None,
    ) -> None:
        self._response = response
        self._resources = resources
        self._on_finish = on_finish
        self.text = ""
        self.finish_reason: str | None = None
        self._iterator = self._iterate()

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> str:
        return await self._iterator.__anext__()

    async def aclose(self) -> None:
        await self._iterator.aclose()
        await self._resources.aclose()

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            content_type = self._response.headers.get("content-type", "")
            if "application/json" in content_type:
                data = json.loads(await self._response.aread())
                first = (data.get("choices") or [{}])[0] or {}
                content = (first.get("message") or {}).get("content")
                self.finish_reason = first.get("finish_reason")
                if content:
                    self.text += str(content)
                    yield str(content)
            else:
                async for line in self._response.aiter_lines():
                    event = parse_sse_line(line)
                    if event is None:
                        continue
                    choices = event.get("choices") or []
                    if not choices:
                        continue
                    first = choices[0] or {}
                    if first.get("finish_reason"):
                        self.finish_reason = first["finish_reason"]
                    delta = first.get("delta") or {}
                    content = delta.get("content")
                    if content is None:
                        content = (first.get("message") or {}).get("content")
                    if content:
                        self.text += str(content)
                        yield str(content)
        finally:
            await self._resources.aclose()
        log.debug("llm_stream_finished", finish_reason=self.finish_reason, chars=len(self.text))
        if self._on_finish is not None:
            await self._on_finish(self.text, self.finish_reason)


async def _send_completion_request(
    client: httpx.AsyncClient, headers: Dict[str, str], payload: Dict[str, Any]
) -> httpx.Response:
    request = client.build_request("POST", f"{_base_url()}/chat/completions", headers=headers, json=payload)
    response = await client.send(request, stream=True)
    if response.status_code in (401, 403):
        await response.aclose()
        raise ProviderAuthError(f"Invalid API key (status {response.status_code})")
    if response.is_error:
        await response.aread()
        await response.aclose()
        response.raise_for_status()
    return response


async def open_completion_stream(
    messages: Sequence[Dict[str, Any]],
    *,
    max_tokens: int | None = None,
    temperature: float = 0.2,
    model: str | None = None,
    on_finish: FinishHook | None = None,
    client: httpx.AsyncClient | None = None,
) -> CompletionStream:
    """Start a streamed chat completion and return it once the response headers arrive.

    Credential problems raise :class:`ProviderAuthError` here, before any text
    has been produced. Connection failures, 429 and 5xx answers are retried.
    """

    headers = _headers()
    payload: Dict[str, Any] = {
        "model": model or _model(),
        "messages": [dict(message) for message in messages],
        "temperature": temperature,
        "stream": True,
    }
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens

    resources = AsyncExitStack()
    try:
        if client is None:
            client = await resources.enter_async_context(httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None)))
        max_attempts = max(_open_max_attempts(), 1)
        retrying = AsyncRetrying(
            wait=wait_exponential(multiplier=1, min=0.5, max=8.0),
            stop=stop_after_attempt(max_attempts),
            retry=retry_if_exception(_is_transient),
            reraise=True,
            before_sleep=lambda state: log.warning(
                "llm_open_retry", attempt=state.attempt_number + 1, max_attempts=max_attempts
            ),
        )
        response = await retrying(_send_completion_request, client, headers, payload)
        resources.push_async_callback(response.aclose)
    except BaseException:
        await resources.aclose()
        raise
    log.debug("llm_stream_opened", model=payload["model"], messages=len(payload["messages"]))
    return CompletionStream(response, resources, on_finish=on_finish)


def to_provider_messages(messages: Sequence[Any]) -> List[Dict[str, Any]]:
    """Reduce chat messages to the ``{role, content}`` pairs the provider accepts."""

    result: List[Dict[str, Any]] = []
    for message in messages:
        if hasattr(message, "model_dump"):
            message = message.model_dump()
        result.append({"role": message.get("role", "user"), "content": message.get("content", "")})
    return result
