from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Sequence

from src.agents.chat_agent import stream_chat
from src.utils import metadata_store
from src.utils.switchable_stream import SwitchableStream

StreamHandler = Callable[[Sequence[Dict[str, Any]]], Awaitable[SwitchableStream]]
RecordHandler = Callable[[str, str, Sequence[Dict[str, Any]]], str]
ProjectLookup = Callable[[str, str], Dict[str, Any] | None]


async def _default_stream(messages: Sequence[Dict[str, Any]]) -> SwitchableStream:
    return await stream_chat(messages)


@dataclass
class ChatAPIAgency:
    """Lightweight wrapper that wires HTTP-facing flows to core agent logic."""

    stream_handler: StreamHandler = _default_stream
    record_handler: RecordHandler = metadata_store.record_chat_messages
    project_lookup: ProjectLookup = metadata_store.get_project

    def find_project(self, project_id: str, user_id: str) -> Dict[str, Any] | None:
        """Return the caller's project, or ``None`` when it is missing or foreign."""
        return self.project_lookup(project_id, user_id)

    def record(self, project_id: str, user_id: str, messages: List[Dict[str, Any]]) -> str:
        return self.record_handler(project_id, user_id, messages)

    async def open_stream(self, messages: Sequence[Dict[str, Any]]) -> SwitchableStream:
        return await self.stream_handler(messages)
