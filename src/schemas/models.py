from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic import ConfigDict


def _now_ms() -> int:
    return int(time.time() * 1000)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class _Record(BaseModel):
    """Base for documents persisted in the local object store (camelCase on disk)."""

    model_config = ConfigDict(populate_by_name=True)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, record: Dict[str, Any]):
        return cls.model_validate(record)


class User(_Record):
    id: str
    created_at: int = Field(default_factory=_now_ms, alias="createdAt")
    updated_at: int = Field(default_factory=_now_ms, alias="updatedAt")


class ChatMessage(BaseModel):
    """A single chat message. Keys beyond id/role/content are kept verbatim."""

    model_config = ConfigDict(extra="allow")

    id: str
    role: str
    content: str = ""


class ChatHistoryItem(_Record):
    id: str
    url_id: Optional[str] = Field(default=None, alias="urlId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    description: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    timestamp: str = Field(default_factory=_now_iso)


class UserProject(_Record):
    id: str
    user_id: str = Field(alias="userId")
    project_id: str = Field(alias="projectId")
    name: str
    created_at: int = Field(default_factory=_now_ms, alias="createdAt")
    updated_at: int = Field(default_factory=_now_ms, alias="updatedAt")

    @staticmethod
    def composite_id(user_id: str, project_id: str) -> str:
        return f"{user_id}_{project_id}"


class ChatExport(BaseModel):
    """Portable form of a single chat used by export/import."""

    description: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    timestamp: Optional[str] = None
    exported_at: str = Field(default_factory=_now_iso)


# HTTP payloads. Required fields are optional here so handlers can answer 400
# with a readable message instead of a schema dump.


class ChatTurn(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: str = ""


class ChatRequest(BaseModel):
    messages: List[ChatTurn] = Field(default_factory=list)
    project_id: Optional[str] = Field(default=None, alias="projectId")

    model_config = ConfigDict(populate_by_name=True)


class CreateUserRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class UserResponse(BaseModel):
    id: str
    created_at: int
    updated_at: int


class CreateProjectRequest(BaseModel):
    name: Optional[str] = None


class ProjectResponse(BaseModel):
    id: str
    name: str
    user_id: str
    created_at: int
    updated_at: int


class ProjectCreatedResponse(BaseModel):
    id: str


class ChatHistoryEntryRequest(BaseModel):
    description: Optional[str] = None


class ChatHistoryEntry(BaseModel):
    id: str
    description: str
    project_id: str
    user_id: str
    created_at: int
    updated_at: int
