from __future__ import annotations

import math
from typing import Any, Iterable

from src.utils.object_store import ObjectStore


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _format_number(number: float) -> str:
    return str(int(number)) if number.is_integer() else repr(number)


def next_id_from_keys(keys: Iterable[Any]) -> str:
    highest = max((_as_number(key) for key in keys), default=0.0)
    return _format_number(max(highest, 0.0) + 1)


def free_slug(candidate: str, taken: Iterable[Any]) -> str:
    used = {str(value) for value in taken if value is not None}
    if candidate not in used:
        return candidate
    suffix = 2
    while f"{candidate}-{suffix}" in used:
        suffix += 1
    return f"{candidate}-{suffix}"


async def next_chat_id(store: ObjectStore) -> str:
    """Return ``max(numeric chat ids) + 1``; non-numeric ids count as 0."""

    async with store.transaction("chats") as tx:
        keys = await tx.get_all_keys("chats")
    return next_id_from_keys(keys)


async def allocate_url_slug(store: ObjectStore, candidate: str) -> str:
    """Return ``candidate`` or the first ``candidate-N`` (N >= 2) no chat uses yet."""

    async with store.transaction("chats") as tx:
        taken = await tx.get_index_values("chats", "urlId")
    return free_slug(candidate, taken)
