from __future__ import annotations

import re

from src.schemas.models import User
from src.utils.errors import StorageUnavailableError, ValidationError
from src.utils.logging import get_logger
from src.utils.object_store import READWRITE, ObjectStore

log = get_logger(__name__)

_USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9._:@-]{1,128}$")


def validate_user_id(user_id: str) -> str:
    normalized = (user_id or "").strip()
    if not _USER_ID_PATTERN.match(normalized):
        raise ValidationError("User id must be 1-128 chars of letters, numbers, or . _ : @ -")
    return normalized


class UserRepository:
    """Users keyed by id.

    Without a backing store lookups return ``None``; ``create`` and ``ensure``
    raise :class:`StorageUnavailableError` since they must hand back a stored user.
    """

    def __init__(self, store: ObjectStore | None) -> None:
        self.store = store

    async def get(self, user_id: str) -> User | None:
        if self.store is None:
            return None
        record = await self.store.get("users", user_id)
        return User.from_record(record) if record else None

    async def create(self, user_id: str) -> User:
        """Insert a new user; raises :class:`ConstraintError` if the id is taken."""

        user = User(id=validate_user_id(user_id))
        if self.store is None:
            raise StorageUnavailableError("User storage is not available")
        await self.store.add("users", user.to_record())
        log.info("user_created", user_id=user.id)
        return user

    async def ensure(self, user_id: str) -> User:
        """Return the stored user, creating it on first sight."""

        normalized = validate_user_id(user_id)
        if self.store is None:
            raise StorageUnavailableError("User storage is not available")
        async with self.store.transaction("users", READWRITE) as tx:
            record = await tx.get("users", normalized)
            if record is not None:
                return User.from_record(record)
            user = User(id=normalized)
            await tx.add("users", user.to_record())
        log.info("user_created", user_id=normalized)
        return user
