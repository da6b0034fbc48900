from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Sequence

from src.utils.errors import NotFoundError, StorageUnavailableError, ValidationError
from src.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_METADATA_DB_PATH = Path("assets/data/processed/metadata.sqlite")


def _metadata_db_path() -> Path:
    return Path(os.getenv("METADATA_DB_PATH", str(DEFAULT_METADATA_DB_PATH)))


def _now() -> int:
    return int(time.time())


def _ensure_metadata_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_projects_user_id ON projects(user_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chat_history (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            description TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE CASCADE
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chat_history_project_id ON chat_history(project_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chat_messages (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE CASCADE
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chat_messages_project_id ON chat_messages(project_id)")
    conn.commit()


def connect_metadata_db() -> sqlite3.Connection:
    path = _metadata_db_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        _ensure_metadata_schema(conn)
    except (OSError, sqlite3.Error) as exc:
        log.error("metadata_db_unavailable", path=str(path), error=str(exc))
        raise StorageUnavailableError(f"Metadata storage unavailable: {exc}") from exc
    return conn


def _row(row: sqlite3.Row | None) -> Dict[str, Any] | None:
    return dict(row) if row is not None else None


def ensure_user(user_id: str) -> Dict[str, Any]:
    if not user_id or not user_id.strip():
        raise ValidationError("userId is required")
    now = _now()
    with connect_metadata_db() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO users (id, created_at, updated_at) VALUES (?, ?, ?)",
            (user_id, now, now),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    log.info("metadata_user_ensured", user_id=user_id)
    return dict(row)


def get_user(user_id: str) -> Dict[str, Any] | None:
    with connect_metadata_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return _row(row)


def _require_user(conn: sqlite3.Connection, user_id: str) -> None:
    if conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
        raise NotFoundError("User not found")


def create_project(user_id: str, name: str) -> Dict[str, Any]:
    if not name or not name.strip():
        raise ValidationError("name is required")
    project_id = str(uuid.uuid4())
    now = _now()
    with connect_metadata_db() as conn:
        _require_user(conn, user_id)
        conn.execute(
            "INSERT INTO projects (id, user_id, name, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (project_id, user_id, name.strip(), now, now),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    log.info("metadata_project_created", user_id=user_id, project_id=project_id)
    return dict(row)


def list_projects(user_id: str) -> List[Dict[str, Any]]:
    with connect_metadata_db() as conn:
        rows = conn.execute(
            "SELECT * FROM projects WHERE user_id = ? ORDER BY created_at DESC, id",
            (user_id,),
        ).fetchall()
    return [dict(row) for row in rows]


def get_project(project_id: str, user_id: str) -> Dict[str, Any] | None:
    """Return the project only when it belongs to ``user_id``."""

    with connect_metadata_db() as conn:
        row = conn.execute(
            "SELECT * FROM projects WHERE id = ? AND user_id = ?",
            (project_id, user_id),
        ).fetchone()
    return _row(row)


def _require_project(conn: sqlite3.Connection, project_id: str, user_id: str) -> None:
    row = conn.execute(
        "SELECT 1 FROM projects WHERE id = ? AND user_id = ?",
        (project_id, user_id),
    ).fetchone()
    if row is None:
        raise NotFoundError("Project not found or unauthorized")


def create_chat_entry(project_id: str, user_id: str, description: str) -> Dict[str, Any]:
    if not description or not description.strip():
        raise ValidationError("description is required")
    entry_id = str(uuid.uuid4())
    now = _now()
    with connect_metadata_db() as conn:
        _require_project(conn, project_id, user_id)
        conn.execute(
            """
            INSERT INTO chat_history (id, project_id, user_id, description, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (entry_id, project_id, user_id, description.strip(), now, now),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM chat_history WHERE id = ?", (entry_id,)).fetchone()
    return dict(row)


def list_chat_entries(project_id: str, user_id: str) -> List[Dict[str, Any]]:
    with connect_metadata_db() as conn:
        _require_project(conn, project_id, user_id)
        rows = conn.execute(
            "SELECT * FROM chat_history WHERE project_id = ? ORDER BY updated_at DESC, id",
            (project_id,),
        ).fetchall()
    return [dict(row) for row in rows]


def record_chat_messages(project_id: str, user_id: str, messages: Sequence[Dict[str, Any]]) -> str:
    message_id = str(uuid.uuid4())
    with connect_metadata_db() as conn:
        _require_project(conn, project_id, user_id)
        conn.execute(
            "INSERT INTO chat_messages (id, project_id, user_id, content, created_at) VALUES (?, ?, ?, ?, ?)",
            (message_id, project_id, user_id, json.dumps(list(messages), ensure_ascii=False), _now()),
        )
        conn.commit()
    return message_id
