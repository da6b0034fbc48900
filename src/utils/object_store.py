"""Transactional, indexed document store backing the local chat history.

Each table holds JSON documents keyed by a primary key path, with optional
secondary indexes (unique or not) materialised as extra columns. The schema is
versioned through ``PRAGMA user_version`` and only ever grows: a migration may
create a table or add an index to an existing one, never drop data.
"""

from __future__ import annotations

import asyncio
import json
import os
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Sequence, Tuple

from src.utils.errors import ConstraintError, TransactionError, ValidationError
from src.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_STORE_PATH = Path("assets/data/local/chat_history.sqlite")
_DISABLED_VALUES = {"", "off", "none", "disabled"}

READONLY = "readonly"
READWRITE = "readwrite"


@dataclass(frozen=True)
class IndexSpec:
    name: str
    key_path: str
    unique: bool = False

    @property
    def column(self) -> str:
        return f"idx_{self.name}"


@dataclass(frozen=True)
class TableSpec:
    name: str
    key_path: str = "id"
    indexes: Tuple[IndexSpec, ...] = ()

    def index(self, name: str) -> IndexSpec:
        for spec in self.indexes:
            if spec.name == name:
                return spec
        raise TransactionError(f"Index '{name}' does not exist on table '{self.name}'")


USERS = TableSpec("users")
CHATS = TableSpec(
    "chats",
    indexes=(
        IndexSpec("urlId", "urlId", unique=True),
        IndexSpec("userId", "userId"),
    ),
)
USER_PROJECTS = TableSpec(
    "userProjects",
    indexes=(
        IndexSpec("userId", "userId"),
        IndexSpec("projectId", "projectId", unique=True),
    ),
)
TABLES: Dict[str, TableSpec] = {spec.name: spec for spec in (USERS, CHATS, USER_PROJECTS)}


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _index_value(record: Dict[str, Any], key_path: str) -> Any:
    value = record.get(key_path)
    # Only scalar values are indexable; anything else is left out of the index.
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    return value


def _create_table(conn: sqlite3.Connection, table: str) -> None:
    conn.execute(
        f"CREATE TABLE IF NOT EXISTS {_quote(table)} (key TEXT PRIMARY KEY NOT NULL, doc TEXT NOT NULL)"
    )


def _add_index(conn: sqlite3.Connection, table: str, index: IndexSpec) -> None:
    columns = {row[1] for row in conn.execute(f"PRAGMA table_info({_quote(table)})")}
    if index.column not in columns:
        conn.execute(f"ALTER TABLE {_quote(table)} ADD COLUMN {_quote(index.column)}")
        rows = conn.execute(f"SELECT key, doc FROM {_quote(table)}").fetchall()
        for key, doc in rows:
            value = _index_value(json.loads(doc), index.key_path)
            conn.execute(
                f"UPDATE {_quote(table)} SET {_quote(index.column)} = ? WHERE key = ?",
                (value, key),
            )
    unique = "UNIQUE " if index.unique else ""
    conn.execute(
        f"CREATE {unique}INDEX IF NOT EXISTS {_quote(f'{table}__{index.name}')} "
        f"ON {_quote(table)}({_quote(index.column)})"
    )


Migration = Callable[[sqlite3.Connection], None]

MIGRATIONS: Tuple[Tuple[int, Tuple[Migration, ...]], ...] = (
    (
        1,
        (
            lambda conn: _create_table(conn, "users"),
            lambda conn: _create_table(conn, "chats"),
            lambda conn: _add_index(conn, "chats", CHATS.index("urlId")),
        ),
    ),
    (
        2,
        (
            lambda conn: _add_index(conn, "chats", CHATS.index("userId")),
            lambda conn: _create_table(conn, "userProjects"),
            lambda conn: _add_index(conn, "userProjects", USER_PROJECTS.index("userId")),
            lambda conn: _add_index(conn, "userProjects", USER_PROJECTS.index("projectId")),
        ),
    ),
)
SCHEMA_VERSION = MIGRATIONS[-1][0]


def _translate(exc: sqlite3.Error) -> Exception:
    if isinstance(exc, sqlite3.IntegrityError):
        return ConstraintError(str(exc))
    return TransactionError(str(exc))


class Transaction:
    """Operations bound to one open SQLite transaction.

    Instances are handed out by :meth:`ObjectStore.transaction`; they are not
    meant to outlive the ``async with`` block that created them.
    """

    def __init__(self, conn: sqlite3.Connection, tables: Sequence[str], mode: str) -> None:
        self._conn = conn
        self._tables = tuple(tables)
        self.mode = mode
        self._lock = asyncio.Lock()

    def _table(self, name: str) -> TableSpec:
        if name not in self._tables:
            raise TransactionError(f"Table '{name}' is not part of this transaction")
        return TABLES[name]

    def _require_write(self) -> None:
        if self.mode != READWRITE:
            raise TransactionError("Cannot write inside a readonly transaction")

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.Error as exc:
                raise _translate(exc) from exc

    def _select_docs(self, sql: str, params: Iterable[Any]) -> List[Dict[str, Any]]:
        return [json.loads(row[0]) for row in self._conn.execute(sql, tuple(params)).fetchall()]

    async def get(self, table: str, key: Any) -> Dict[str, Any] | None:
        spec = self._table(table)
        docs = await self._run(
            self._select_docs, f"SELECT doc FROM {_quote(spec.name)} WHERE key = ?", (key,)
        )
        return docs[0] if docs else None

    async def get_all(self, table: str) -> List[Dict[str, Any]]:
        spec = self._table(table)
        return await self._run(self._select_docs, f"SELECT doc FROM {_quote(spec.name)} ORDER BY key", ())

    async def get_all_keys(self, table: str) -> List[str]:
        spec = self._table(table)

        def _keys() -> List[str]:
            return [row[0] for row in self._conn.execute(f"SELECT key FROM {_quote(spec.name)} ORDER BY key")]

        return await self._run(_keys)

    async def get_by_index(self, table: str, index: str, value: Any) -> Dict[str, Any] | None:
        spec = self._table(table)
        column = spec.index(index).column
        docs = await self._run(
            self._select_docs,
            f"SELECT doc FROM {_quote(spec.name)} WHERE {_quote(column)} = ? ORDER BY key LIMIT 1",
            (value,),
        )
        return docs[0] if docs else None

    async def get_all_by_index(self, table: str, index: str, value: Any) -> List[Dict[str, Any]]:
        spec = self._table(table)
        column = spec.index(index).column
        return await self._run(
            self._select_docs,
            f"SELECT doc FROM {_quote(spec.name)} WHERE {_quote(column)} = ? ORDER BY key",
            (value,),
        )

    async def get_index_values(self, table: str, index: str) -> List[Any]:
        spec = self._table(table)
        column = spec.index(index).column

        def _values() -> List[Any]:
            rows = self._conn.execute(f"SELECT {_quote(column)} FROM {_quote(spec.name)} ORDER BY key")
            return [row[0] for row in rows if row[0] is not None]

        return await self._run(_values)

    async def count(self, table: str) -> int:
        spec = self._table(table)

        def _count() -> int:
            row = self._conn.execute(f"SELECT COUNT(*) FROM {_quote(spec.name)}").fetchone()
            return int(row[0] or 0)

        return await self._run(_count)

    def _row(self, spec: TableSpec, record: Dict[str, Any]) -> Tuple[List[str], List[Any]]:
        key = record.get(spec.key_path)
        if key is None or key == "":
            raise ValidationError(f"Record for '{spec.name}' is missing its '{spec.key_path}' key")
        columns = ["key", "doc"] + [index.column for index in spec.indexes]
        values = [key, json.dumps(record, ensure_ascii=False)]
        values.extend(_index_value(record, index.key_path) for index in spec.indexes)
        return columns, values

    async def add(self, table: str, record: Dict[str, Any]) -> Any:
        """Insert ``record``; raises :class:`ConstraintError` if its key or a unique value exists."""

        spec = self._table(table)
        self._require_write()
        columns, values = self._row(spec, record)
        sql = (
            f"INSERT INTO {_quote(spec.name)} ({', '.join(_quote(c) for c in columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        await self._run(self._conn.execute, sql, values)
        return values[0]

    async def put(self, table: str, record: Dict[str, Any]) -> Any:
        """Insert or replace ``record`` by primary key."""

        spec = self._table(table)
        self._require_write()
        columns, values = self._row(spec, record)
        updates = ", ".join(f"{_quote(c)} = excluded.{_quote(c)}" for c in columns[1:])
        sql = (
            f"INSERT INTO {_quote(spec.name)} ({', '.join(_quote(c) for c in columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT(key) DO UPDATE SET {updates}"
        )
        await self._run(self._conn.execute, sql, values)
        return values[0]

    async def delete(self, table: str, key: Any) -> None:
        spec = self._table(table)
        self._require_write()
        await self._run(self._conn.execute, f"DELETE FROM {_quote(spec.name)} WHERE key = ?", (key,))


class ObjectStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False, timeout=30.0)
        conn.execute("PRAGMA busy_timeout = 30000")
        return conn

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            current = int(conn.execute("PRAGMA user_version").fetchone()[0] or 0)
            for version, steps in MIGRATIONS:
                if version <= current:
                    continue
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for step in steps:
                        step(conn)
                    conn.execute(f"PRAGMA user_version = {int(version)}")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
                log.info("object_store_migrated", path=str(self.path), version=version)
                current = version
            return current
        finally:
            conn.close()

    def schema_version(self) -> int:
        conn = self._connect()
        try:
            return int(conn.execute("PRAGMA user_version").fetchone()[0] or 0)
        finally:
            conn.close()

    def _begin(self, mode: str) -> sqlite3.Connection:
        conn = self._connect()
        try:
            if mode == READWRITE:
                conn.execute("BEGIN IMMEDIATE")
            else:
                conn.execute("PRAGMA query_only = ON")
                conn.execute("BEGIN")
                # Pin the read snapshot now rather than at the first query.
                conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
        except BaseException:
            conn.close()
            raise
        return conn

    @staticmethod
    def _finish(conn: sqlite3.Connection, commit: bool) -> None:
        try:
            conn.execute("COMMIT" if commit else "ROLLBACK")
        finally:
            conn.close()

    @asynccontextmanager
    async def transaction(self, tables: str | Sequence[str], mode: str = READONLY) -> AsyncIterator[Transaction]:
        """Scope a transaction over ``tables``: commit on normal exit, roll back on error."""

        if mode not in (READONLY, READWRITE):
            raise ValueError(f"Unknown transaction mode: {mode}")
        scope = (tables,) if isinstance(tables, str) else tuple(tables)
        unknown = [name for name in scope if name not in TABLES]
        if unknown:
            raise TransactionError(f"Unknown table(s): {', '.join(unknown)}")
        try:
            conn = await asyncio.to_thread(self._begin, mode)
        except sqlite3.Error as exc:
            raise _translate(exc) from exc
        tx = Transaction(conn, scope, mode)
        try:
            yield tx
        except BaseException:
            try:
                await asyncio.to_thread(self._finish, conn, False)
            except sqlite3.Error as rollback_exc:
                log.error("object_store_rollback_failed", path=str(self.path), error=str(rollback_exc))
            raise
        try:
            await asyncio.to_thread(self._finish, conn, True)
        except sqlite3.Error as exc:
            raise _translate(exc) from exc

    async def get(self, table: str, key: Any) -> Dict[str, Any] | None:
        async with self.transaction(table) as tx:
            return await tx.get(table, key)

    async def get_all(self, table: str) -> List[Dict[str, Any]]:
        async with self.transaction(table) as tx:
            return await tx.get_all(table)

    async def get_all_keys(self, table: str) -> List[str]:
        async with self.transaction(table) as tx:
            return await tx.get_all_keys(table)

    async def get_by_index(self, table: str, index: str, value: Any) -> Dict[str, Any] | None:
        async with self.transaction(table) as tx:
            return await tx.get_by_index(table, index, value)

    async def get_all_by_index(self, table: str, index: str, value: Any) -> List[Dict[str, Any]]:
        async with self.transaction(table) as tx:
            return await tx.get_all_by_index(table, index, value)

    async def count(self, table: str) -> int:
        async with self.transaction(table) as tx:
            return await tx.count(table)

    async def put(self, table: str, record: Dict[str, Any]) -> Any:
        async with self.transaction(table, READWRITE) as tx:
            return await tx.put(table, record)

    async def add(self, table: str, record: Dict[str, Any]) -> Any:
        async with self.transaction(table, READWRITE) as tx:
            return await tx.add(table, record)

    async def delete(self, table: str, key: Any) -> None:
        async with self.transaction(table, READWRITE) as tx:
            await tx.delete(table, key)


def resolve_store_path(path: str | Path | None = None) -> Path | None:
    raw = str(path) if path is not None else os.getenv("CHAT_STORE_PATH", str(DEFAULT_STORE_PATH))
    if raw.strip().lower() in _DISABLED_VALUES:
        return None
    return Path(raw.strip())


async def open_object_store(path: str | Path | None = None) -> ObjectStore | None:
    """Open (creating or upgrading as needed) the local store.

    Returns ``None`` when persistence is disabled or the backing file cannot be
    opened; callers are expected to fall back to a no-persistence mode.
    """

    resolved = resolve_store_path(path)
    if resolved is None:
        log.warning("object_store_disabled")
        return None
    store = ObjectStore(resolved)
    try:
        version = await asyncio.to_thread(store.migrate)
    except (OSError, sqlite3.Error) as exc:
        log.error("object_store_unavailable", path=str(resolved), error=str(exc))
        return None
    log.debug("object_store_opened", path=str(resolved), version=version)
    return store
