from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Sequence

from src.schemas.models import ChatExport, ChatHistoryItem, ChatMessage
from src.utils.errors import NotFoundError, StorageUnavailableError, ValidationError
from src.utils.identifiers import allocate_url_slug, next_chat_id
from src.utils.logging import get_logger
from src.utils.object_store import READWRITE, ObjectStore

log = get_logger(__name__)

FORK_SUFFIX = " (fork)"
COPY_SUFFIX = " (copy)"
FORK_FALLBACK_TITLE = "Forked chat"
COPY_FALLBACK_TITLE = "Chat"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 or RFC 2822 date string; raises :class:`ValidationError` otherwise."""

    text = (value or "").strip()
    if not text:
        raise ValidationError("Invalid timestamp")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError, OverflowError):
            raise ValidationError(f"Invalid timestamp: {value}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _sort_key(chat: ChatHistoryItem) -> datetime:
    try:
        return parse_timestamp(chat.timestamp)
    except ValidationError:
        return datetime.min.replace(tzinfo=UTC)


def is_visible_to(chat: ChatHistoryItem, caller_user_id: str | None) -> bool:
    """Ownerless chats are visible to everyone; owned chats only to their owner."""

    return not chat.user_id or chat.user_id == caller_user_id


def _coerce_messages(messages: Sequence[ChatMessage | Dict[str, Any]]) -> List[ChatMessage]:
    return [m if isinstance(m, ChatMessage) else ChatMessage.model_validate(m) for m in messages]


class ChatRepository:
    """Chat history over the ``chats`` table.

    Every read takes the caller's user id explicitly and hides chats owned by
    someone else. A repository built over ``None`` (no persistent storage) keeps
    working: reads come back empty and plain writes are skipped.
    """

    def __init__(self, store: ObjectStore | None) -> None:
        self.store = store

    @property
    def enabled(self) -> bool:
        return self.store is not None

    async def list_all(self, caller_user_id: str | None) -> List[ChatHistoryItem]:
        if self.store is None:
            return []
        records = await self.store.get_all("chats")
        chats = [ChatHistoryItem.from_record(record) for record in records]
        visible = [chat for chat in chats if is_visible_to(chat, caller_user_id)]
        return sorted(visible, key=_sort_key, reverse=True)

    async def get(self, id_or_url_id: str, caller_user_id: str | None) -> ChatHistoryItem | None:
        if self.store is None:
            return None
        async with self.store.transaction("chats") as tx:
            record = await tx.get("chats", id_or_url_id)
            if record is None:
                record = await tx.get_by_index("chats", "urlId", id_or_url_id)
        if record is None:
            return None
        chat = ChatHistoryItem.from_record(record)
        if not is_visible_to(chat, caller_user_id):
            log.debug("chat_hidden_from_caller", chat_id=chat.id, caller=caller_user_id)
            return None
        return chat

    async def _require(self, id_or_url_id: str, caller_user_id: str | None) -> ChatHistoryItem:
        chat = await self.get(id_or_url_id, caller_user_id)
        if chat is None:
            raise NotFoundError("Chat not found")
        return chat

    async def save(
        self,
        id: str,
        messages: Sequence[ChatMessage | Dict[str, Any]],
        user_id: str | None,
        url_id: str | None = None,
        description: str | None = None,
        timestamp: str | None = None,
    ) -> ChatHistoryItem:
        """Replace the whole record stored under ``id``."""

        if timestamp is not None:
            parse_timestamp(timestamp)
        chat = ChatHistoryItem(
            id=id,
            url_id=url_id,
            user_id=user_id,
            description=description,
            messages=_coerce_messages(messages),
            timestamp=timestamp if timestamp is not None else _now_iso(),
        )
        if self.store is None:
            return chat
        await self.store.put("chats", chat.to_record())
        log.debug("chat_saved", chat_id=id, url_id=url_id, messages=len(chat.messages))
        return chat

    async def remove(self, id: str) -> None:
        if self.store is None:
            return
        await self.store.delete("chats", id)
        log.info("chat_deleted", chat_id=id)

    async def create_from_messages(
        self,
        description: str | None,
        messages: Sequence[ChatMessage | Dict[str, Any]],
    ) -> str:
        """Store a new ownerless chat and return its url slug."""

        if self.store is None:
            raise StorageUnavailableError("Chat history is not available")
        new_id = await next_chat_id(self.store)
        url_id = await allocate_url_slug(self.store, new_id)
        await self.save(new_id, messages, None, url_id, description)
        log.info("chat_created", chat_id=new_id, url_id=url_id)
        return url_id

    async def fork(self, chat_id: str, at_message_id: str, caller_user_id: str | None) -> str:
        chat = await self._require(chat_id, caller_user_id)
        index = next((i for i, message in enumerate(chat.messages) if message.id == at_message_id), None)
        if index is None:
            raise NotFoundError("Message not found")
        description = f"{chat.description}{FORK_SUFFIX}" if chat.description else FORK_FALLBACK_TITLE
        url_id = await self.create_from_messages(description, chat.messages[: index + 1])
        log.info("chat_forked", source=chat.id, message_id=at_message_id, url_id=url_id)
        return url_id

    async def duplicate(self, chat_id: str, caller_user_id: str | None) -> str:
        chat = await self._require(chat_id, caller_user_id)
        description = f"{chat.description or COPY_FALLBACK_TITLE}{COPY_SUFFIX}"
        url_id = await self.create_from_messages(description, chat.messages)
        log.info("chat_duplicated", source=chat.id, url_id=url_id)
        return url_id

    async def update_description(self, id: str, text: str, caller_user_id: str | None) -> ChatHistoryItem:
        if self.store is None:
            raise NotFoundError("Chat not found")
        async with self.store.transaction("chats", READWRITE) as tx:
            record = await tx.get("chats", id) or await tx.get_by_index("chats", "urlId", id)
            if record is None or not is_visible_to(ChatHistoryItem.from_record(record), caller_user_id):
                raise NotFoundError("Chat not found")
            if not (text or "").strip():
                raise ValidationError("Description cannot be empty")
            chat = ChatHistoryItem.from_record(record).model_copy(update={"description": text})
            await tx.put("chats", chat.to_record())
        log.info("chat_renamed", chat_id=chat.id)
        return chat

    async def export(self, id_or_url_id: str, caller_user_id: str | None) -> ChatExport:
        chat = await self._require(id_or_url_id, caller_user_id)
        return ChatExport(description=chat.description, messages=chat.messages, timestamp=chat.timestamp)

    async def import_chat(self, payload: ChatExport | Dict[str, Any]) -> str:
        export = payload if isinstance(payload, ChatExport) else ChatExport.model_validate(payload)
        if export.timestamp is not None:
            parse_timestamp(export.timestamp)
        return await self.create_from_messages(export.description, export.messages)
