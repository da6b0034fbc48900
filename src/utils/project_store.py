from __future__ import annotations

import time
from typing import List

from src.schemas.models import UserProject
from src.utils.errors import StorageUnavailableError, ValidationError
from src.utils.logging import get_logger
from src.utils.object_store import ObjectStore

log = get_logger(__name__)


class ProjectRepository:
    """User-owned projects keyed by ``"{user_id}_{project_id}"``.

    Without a backing store reads come back empty and ``update``/``remove`` are
    skipped; ``create`` raises :class:`StorageUnavailableError`, as
    ``UserRepository.create`` does.
    """

    def __init__(self, store: ObjectStore | None) -> None:
        self.store = store

    async def create(self, user_id: str, project_id: str, name: str) -> UserProject:
        if not user_id or not project_id:
            raise ValidationError("Project requires both a user id and a project id")
        project = UserProject(
            id=UserProject.composite_id(user_id, project_id),
            user_id=user_id,
            project_id=project_id,
            name=name,
        )
        if self.store is None:
            raise StorageUnavailableError("Project storage is not available")
        # add, not put: a second create for the same pair must fail.
        await self.store.add("userProjects", project.to_record())
        log.info("project_created", user_id=user_id, project_id=project_id)
        return project

    async def get(self, user_id: str, project_id: str) -> UserProject | None:
        if self.store is None:
            return None
        record = await self.store.get("userProjects", UserProject.composite_id(user_id, project_id))
        return UserProject.from_record(record) if record else None

    async def list_by_user(self, user_id: str) -> List[UserProject]:
        if self.store is None:
            return []
        records = await self.store.get_all_by_index("userProjects", "userId", user_id)
        return [UserProject.from_record(record) for record in records]

    async def update(self, project: UserProject) -> UserProject:
        updated = project.model_copy(update={"updated_at": int(time.time() * 1000)})
        if self.store is None:
            return updated
        await self.store.put("userProjects", updated.to_record())
        log.info("project_updated", user_id=updated.user_id, project_id=updated.project_id)
        return updated

    async def remove(self, user_id: str, project_id: str) -> None:
        if self.store is None:
            return
        await self.store.delete("userProjects", UserProject.composite_id(user_id, project_id))
        log.info("project_deleted", user_id=user_id, project_id=project_id)

    async def has_access(self, user_id: str | None, project_id: str | None) -> bool:
        if not user_id or not project_id:
            return False
        projects = await self.list_by_user(user_id)
        return any(project.project_id == project_id for project in projects)
