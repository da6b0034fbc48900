from __future__ import annotations

import os
import time
import uuid
from typing import AsyncIterator, List

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware

from src.agencies.http_api import ChatAPIAgency
from src.schemas.models import (
    ChatHistoryEntry,
    ChatHistoryEntryRequest,
    ChatRequest,
    CreateProjectRequest,
    CreateUserRequest,
    ProjectCreatedResponse,
    ProjectResponse,
    UserResponse,
)
from src.utils import metadata_store
from src.utils.env import load_env_file, read_flag_env
from src.utils.errors import (
    ChatVaultError,
    ConstraintError,
    NotFoundError,
    ProviderAuthError,
    StorageUnavailableError,
    ValidationError,
)
from src.utils.logging import bind_request_context, clear_request_context, get_logger
from src.utils.security import require_caller
from src.utils.switchable_stream import SwitchableStream

load_env_file()

raw_origins = os.getenv("CORS_ALLOW_ORIGINS", "*")

if raw_origins.strip() == "*":
    cors_origins = ["*"]
else:
    cors_origins = [entry.strip() for entry in raw_origins.split(",") if entry.strip()]

cors_allow_credentials = read_flag_env("CORS_ALLOW_CREDENTIALS", True)

if cors_origins == ["*"] and cors_allow_credentials:
    cors_allow_credentials = False

cors_middleware = Middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

log = get_logger(__name__)

app = FastAPI(title="Chat Vault API", version="0.1.0", middleware=[cors_middleware])

_AGENCY = ChatAPIAgency()


def get_agency() -> ChatAPIAgency:
    return _AGENCY


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = uuid.uuid4().hex
    bind_request_context(request_id=request_id)
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000
        log.error(
            "api_request_failed",
            path=request.url.path,
            duration_ms=duration_ms,
            request_id=request_id,
            error=str(exc),
        )
        clear_request_context()
        raise
    duration_ms = (time.perf_counter() - start) * 1000
    log.info(
        "api_request",
        path=request.url.path,
        method=request.method,
        status=response.status_code,
        duration_ms=duration_ms,
        request_id=request_id,
    )
    response.headers["X-Request-ID"] = request_id
    clear_request_context()
    return response


def _error_response(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error_response(400, str(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(404, str(exc))


@app.exception_handler(ConstraintError)
async def constraint_error_handler(request: Request, exc: ConstraintError) -> JSONResponse:
    return _error_response(409, str(exc))


@app.exception_handler(StorageUnavailableError)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError) -> JSONResponse:
    log.error("api_storage_unavailable", path=request.url.path, error=str(exc))
    return _error_response(500, "Storage unavailable")


async def _response_body(stream: SwitchableStream) -> AsyncIterator[bytes]:
    try:
        async for chunk in stream:
            yield chunk
    except ChatVaultError as exc:
        log.error("chat_stream_aborted", error=str(exc), error_type=type(exc).__name__, switches=stream.switches)
        raise


@app.post("/api/chat")
async def chat_endpoint(
    payload: ChatRequest,
    user_id: str = Depends(require_caller),
    agency: ChatAPIAgency = Depends(get_agency),
):
    if not payload.project_id:
        raise HTTPException(status_code=400, detail="projectId is required")
    if not payload.messages:
        raise HTTPException(status_code=400, detail="messages are required")

    if await run_in_threadpool(agency.find_project, payload.project_id, user_id) is None:
        raise HTTPException(status_code=404, detail="Project not found or unauthorized")

    messages = [message.model_dump() for message in payload.messages]
    await run_in_threadpool(agency.record, payload.project_id, user_id, messages)

    try:
        stream = await agency.open_stream(messages)
    except ProviderAuthError as exc:
        log.warning("chat_provider_auth_failed", user_id=user_id, error=str(exc))
        raise HTTPException(status_code=401, detail="Invalid or missing API key") from exc
    except Exception as exc:
        log.error("chat_stream_open_failed", user_id=user_id, error=str(exc))
        raise HTTPException(status_code=500, detail="Internal Server Error") from exc

    return StreamingResponse(_response_body(stream), media_type="text/plain; charset=utf-8")


def _user_payload(row) -> UserResponse:
    return UserResponse(id=row["id"], created_at=row["created_at"], updated_at=row["updated_at"])


@app.post("/api/users", response_model=UserResponse)
def create_user_endpoint(payload: CreateUserRequest) -> UserResponse:
    if not payload.user_id or not payload.user_id.strip():
        raise HTTPException(status_code=400, detail="userId is required")
    row = metadata_store.ensure_user(payload.user_id.strip())
    return _user_payload(row)


@app.get("/api/users/{user_id}", response_model=UserResponse)
def get_user_endpoint(user_id: str) -> UserResponse:
    row = metadata_store.get_user(user_id)
    if row is None:
        raise HTTPException(status_code=404, detail="User not found")
    return _user_payload(row)


@app.get("/api/projects", response_model=List[ProjectResponse])
def list_projects_endpoint(user_id: str = Depends(require_caller)) -> List[ProjectResponse]:
    return [ProjectResponse(**row) for row in metadata_store.list_projects(user_id)]


@app.post("/api/projects", response_model=ProjectCreatedResponse)
def create_project_endpoint(
    payload: CreateProjectRequest,
    user_id: str = Depends(require_caller),
) -> ProjectCreatedResponse:
    if not payload.name or not payload.name.strip():
        raise HTTPException(status_code=400, detail="name is required")
    row = metadata_store.create_project(user_id, payload.name)
    return ProjectCreatedResponse(id=row["id"])


@app.get("/api/projects/{project_id}/chats", response_model=List[ChatHistoryEntry])
def list_chat_entries_endpoint(project_id: str, user_id: str = Depends(require_caller)) -> List[ChatHistoryEntry]:
    return [ChatHistoryEntry(**row) for row in metadata_store.list_chat_entries(project_id, user_id)]


@app.post("/api/projects/{project_id}/chats", response_model=ChatHistoryEntry)
def create_chat_entry_endpoint(
    project_id: str,
    payload: ChatHistoryEntryRequest,
    user_id: str = Depends(require_caller),
) -> ChatHistoryEntry:
    if not payload.description or not payload.description.strip():
        raise HTTPException(status_code=400, detail="description is required")
    row = metadata_store.create_chat_entry(project_id, user_id, payload.description)
    return ChatHistoryEntry(**row)


@app.get("/healthz")
def healthz() -> Response:
    return JSONResponse({"status": "ok"})
