from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict

import uvicorn
import yaml

from src.schemas.models import ChatExport
from src.utils.chat_store import ChatRepository
from src.utils.env import load_env_file
from src.utils.errors import ConstraintError, NotFoundError, StorageUnavailableError, ValidationError
from src.utils.logging import get_logger
from src.utils.object_store import ObjectStore, open_object_store
from src.utils.project_store import ProjectRepository
from src.utils.user_store import UserRepository

load_env_file()
log = get_logger(__name__)


def _load_config(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise SystemExit(f"Config file not found: {path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data


def _apply_config(config: Dict[str, Any]) -> None:
    store_cfg = config.get("store", {})
    if store_cfg.get("path") is not None:
        os.environ["CHAT_STORE_PATH"] = str(store_cfg["path"])

    llm_cfg = config.get("llm", {})
    env_map = {
        "base": "LLM_BASE",
        "model": "LLM_MODEL",
    }
    for key, env_var in env_map.items():
        value = llm_cfg.get(key)
        if value:
            os.environ[env_var] = str(value)
    if "api_key" in llm_cfg:
        log.warning("config_api_key_ignored", msg="Use .env for LLM_API_KEY")

    limits_cfg = config.get("limits", {})
    if (max_tokens := limits_cfg.get("max_tokens")) is not None:
        os.environ["MAX_TOKENS"] = str(max_tokens)
    if (segments := limits_cfg.get("max_response_segments")) is not None:
        os.environ["MAX_RESPONSE_SEGMENTS"] = str(segments)


async def _open_store(args: argparse.Namespace) -> ObjectStore | None:
    store = await open_object_store(getattr(args, "store", None))
    if store is None:
        print("Local chat storage is disabled; nothing is persisted.")
    return store


def _print_chat_line(chat) -> None:
    owner = chat.user_id or "-"
    title = chat.description or "(untitled)"
    print(f"{chat.id} | {chat.url_id or '-'} | owner={owner} | messages={len(chat.messages)} | {chat.timestamp} | {title}")


def cmd_chats_list(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        chats = await ChatRepository(await _open_store(args)).list_all(args.user)
        if not chats:
            print("No chats.")
            return
        for chat in chats:
            _print_chat_line(chat)

    asyncio.run(run())


def cmd_chats_show(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        chat = await ChatRepository(await _open_store(args)).get(args.chat_id, args.user)
        if chat is None:
            print("Chat not found.")
            return
        print(f"Chat: {chat.id} (url={chat.url_id or '-'})")
        print(f"Description: {chat.description or '(untitled)'}")
        print(f"Updated: {chat.timestamp}")
        for message in chat.messages:
            print(f"[{message.id}] {message.role}: {message.content}")

    asyncio.run(run())


def cmd_chats_fork(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        url_id = await ChatRepository(await _open_store(args)).fork(args.chat_id, args.message_id, args.user)
        print(f"Forked chat: {url_id}")

    asyncio.run(run())


def cmd_chats_duplicate(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        url_id = await ChatRepository(await _open_store(args)).duplicate(args.chat_id, args.user)
        print(f"Duplicated chat: {url_id}")

    asyncio.run(run())


def cmd_chats_rename(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        chat = await ChatRepository(await _open_store(args)).update_description(
            args.chat_id, args.description, args.user
        )
        print(f"Renamed chat {chat.id}: {chat.description}")

    asyncio.run(run())


def cmd_chats_delete(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        repo = ChatRepository(await _open_store(args))
        chat = await repo.get(args.chat_id, args.user)
        if chat is None:
            print("Chat not found.")
            return
        await repo.remove(chat.id)
        print(f"Deleted chat {chat.id}")

    asyncio.run(run())


def cmd_chats_export(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        export = await ChatRepository(await _open_store(args)).export(args.chat_id, args.user)
        payload = json.dumps(export.model_dump(mode="json"), ensure_ascii=False, indent=2)
        if args.output:
            Path(args.output).write_text(payload, encoding="utf-8")
            print(f"Exported chat to {args.output}")
        else:
            print(payload)

    asyncio.run(run())


def cmd_chats_import(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    path = Path(args.path)
    if not path.exists():
        raise SystemExit(f"Export file not found: {args.path}")
    try:
        export = ChatExport.model_validate_json(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise SystemExit(f"Invalid chat export: {exc}") from exc

    async def run() -> None:
        url_id = await ChatRepository(await _open_store(args)).import_chat(export)
        print(f"Imported chat: {url_id}")

    asyncio.run(run())


def cmd_projects_create(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        project = await ProjectRepository(await _open_store(args)).create(args.user, args.project_id, args.name)
        print(f"Created project {project.project_id} ({project.name}) for {project.user_id}")

    asyncio.run(run())


def cmd_projects_list(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        projects = await ProjectRepository(await _open_store(args)).list_by_user(args.user)
        if not projects:
            print("No projects.")
            return
        for project in projects:
            print(f"{project.project_id} | {project.name} | updated={project.updated_at}")

    asyncio.run(run())


def cmd_projects_rename(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        repo = ProjectRepository(await _open_store(args))
        project = await repo.get(args.user, args.project_id)
        if project is None:
            print("Project not found.")
            return
        updated = await repo.update(project.model_copy(update={"name": args.name}))
        print(f"Renamed project {updated.project_id}: {updated.name}")

    asyncio.run(run())


def cmd_projects_delete(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        await ProjectRepository(await _open_store(args)).remove(args.user, args.project_id)
        print(f"Deleted project {args.project_id}")

    asyncio.run(run())


def cmd_users_ensure(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        user = await UserRepository(await _open_store(args)).ensure(args.user_id)
        print(f"User {user.id} (created={user.created_at})")

    asyncio.run(run())


def cmd_serve(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    app_path = args.app
    host = args.host
    port = args.port
    reload = args.reload
    log.info("api_serve_start", app=app_path, host=host, port=port, reload=reload)
    uvicorn.run(app_path, host=host, port=port, reload=reload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chat Vault CLI")
    parser.add_argument("--config", help="Path to YAML config", default=None)
    parser.add_argument("--store", help="Path to the local chat store (overrides CHAT_STORE_PATH)", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_chats = sub.add_parser("chats", help="Inspect and manage local chats")
    p_chats.add_argument("--user", default=None, help="Caller user id used for visibility checks")
    chats = p_chats.add_subparsers(dest="chats_cmd", required=True)

    p_list = chats.add_parser("list", help="List chats visible to the caller")
    p_list.set_defaults(func=cmd_chats_list)

    p_show = chats.add_parser("show", help="Print a chat and its messages")
    p_show.add_argument("chat_id", help="Chat id or url slug")
    p_show.set_defaults(func=cmd_chats_show)

    p_fork = chats.add_parser("fork", help="Fork a chat at a message")
    p_fork.add_argument("chat_id", help="Chat id or url slug")
    p_fork.add_argument("message_id", help="Last message to keep in the fork")
    p_fork.set_defaults(func=cmd_chats_fork)

    p_dup = chats.add_parser("duplicate", help="Copy a chat")
    p_dup.add_argument("chat_id", help="Chat id or url slug")
    p_dup.set_defaults(func=cmd_chats_duplicate)

    p_rename = chats.add_parser("rename", help="Change a chat description")
    p_rename.add_argument("chat_id", help="Chat id or url slug")
    p_rename.add_argument("description")
    p_rename.set_defaults(func=cmd_chats_rename)

    p_delete = chats.add_parser("delete", help="Delete a chat")
    p_delete.add_argument("chat_id", help="Chat id or url slug")
    p_delete.set_defaults(func=cmd_chats_delete)

    p_export = chats.add_parser("export", help="Export a chat as JSON")
    p_export.add_argument("chat_id", help="Chat id or url slug")
    p_export.add_argument("--output", help="Write to this file instead of stdout")
    p_export.set_defaults(func=cmd_chats_export)

    p_import = chats.add_parser("import", help="Import a chat exported as JSON")
    p_import.add_argument("path", help="Path to the export file")
    p_import.set_defaults(func=cmd_chats_import)

    p_projects = sub.add_parser("projects", help="Manage projects owned by a user")
    p_projects.add_argument("--user", required=True, help="Owning user id")
    projects = p_projects.add_subparsers(dest="projects_cmd", required=True)

    p_pcreate = projects.add_parser("create", help="Create a project")
    p_pcreate.add_argument("project_id")
    p_pcreate.add_argument("name")
    p_pcreate.set_defaults(func=cmd_projects_create)

    p_plist = projects.add_parser("list", help="List the user's projects")
    p_plist.set_defaults(func=cmd_projects_list)

    p_prename = projects.add_parser("rename", help="Rename a project")
    p_prename.add_argument("project_id")
    p_prename.add_argument("name")
    p_prename.set_defaults(func=cmd_projects_rename)

    p_pdelete = projects.add_parser("delete", help="Delete a project")
    p_pdelete.add_argument("project_id")
    p_pdelete.set_defaults(func=cmd_projects_delete)

    p_users = sub.add_parser("users", help="Manage local users")
    users = p_users.add_subparsers(dest="users_cmd", required=True)
    p_ensure = users.add_parser("ensure", help="Create the user if it does not exist")
    p_ensure.add_argument("user_id")
    p_ensure.set_defaults(func=cmd_users_ensure)

    p_serve = sub.add_parser("serve", help="Run the HTTP API server")
    p_serve.add_argument("--app", default="src.agents.http_api:app", help="ASGI app import path")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = _load_config(args.config)
    _apply_config(config)
    try:
        args.func(args, config)
    except (NotFoundError, ValidationError, ConstraintError, StorageUnavailableError) as exc:
        raise SystemExit(f"error: {exc}") from exc


if __name__ == "__main__":
    main()
