"""SQLite persistence layer for the Object Store.

Feature-flagged: only active when ``store.persistence_enabled=true``
(``KUBELOOP_STORE_PERSISTENCE_ENABLED``).

Write model:
- WAL mode, one row per object, written through on every store write
  while the store holds its write lock (single writer).
- The in-memory store only commits a write after the row is committed, so
  a failing database surfaces as ``TransientInfraError`` to the writer.
- Writes that touch several objects (a Pod binding and its Node) go
  through ``put_many`` and commit in one transaction.

Schema::

    CREATE TABLE objects (
        kind             TEXT,
        namespace        TEXT,
        name             TEXT,
        resource_version INTEGER,
        body_json        TEXT,
        PRIMARY KEY (kind, namespace, name)
    );
"""

from __future__ import annotations

import json
from typing import Final

import aiosqlite

from kubeloop.models.objects import KubeObject, ObjectKey
from kubeloop.observability.logging import get_logger

_logger = get_logger("sqlite_backend")

_SCHEMA_DDL: Final[str] = """
CREATE TABLE IF NOT EXISTS objects (
    kind             TEXT    NOT NULL,
    namespace        TEXT    NOT NULL,
    name             TEXT    NOT NULL,
    resource_version INTEGER NOT NULL,
    body_json        TEXT    NOT NULL,
    PRIMARY KEY (kind, namespace, name)
);

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
"""

_UPSERT_SQL: Final[str] = """
INSERT OR REPLACE INTO objects (kind, namespace, name, resource_version, body_json)
VALUES (?, ?, ?, ?, ?)
"""


class SQLiteBackend:
    """Async SQLite write-through persistence for :class:`ObjectStore`.

    Args:
        db_path: Path to the SQLite database file (``":memory:"`` for tests).
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def open(self) -> None:
        """Open the database and apply the schema."""
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.executescript(_SCHEMA_DDL)
        await self._db.commit()
        _logger.info("sqlite_backend_opened", db_path=self._db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
        _logger.info("sqlite_backend_closed", db_path=self._db_path)

    async def load(self) -> tuple[list[KubeObject], int]:
        """Return every stored object and the last assigned resourceVersion."""
        if self._db is None:
            return [], 0

        objects: list[KubeObject] = []
        rows = await self._db.execute_fetchall("SELECT body_json FROM objects ORDER BY resource_version ASC")
        for row in rows:
            try:
                objects.append(KubeObject.from_dict(json.loads(row[0])))
            except (json.JSONDecodeError, ValueError) as exc:
                _logger.error("sqlite_load_parse_error", error=str(exc))

        meta = await self._db.execute_fetchall("SELECT value FROM meta WHERE key = 'resource_version'")
        last_version = int(meta[0][0]) if meta else 0
        last_version = max([last_version, *(obj.resource_version for obj in objects)])
        return objects, last_version

    async def put(self, obj: KubeObject) -> None:
        """Insert or replace *obj* and record the store's resourceVersion."""
        if self._db is None:
            return
        await self._db.execute(_UPSERT_SQL, _row(obj))
        await self._record_version(obj.resource_version)
        await self._db.commit()

    async def put_many(self, objs: list[KubeObject]) -> None:
        """Insert or replace every object in *objs* in a single transaction."""
        if self._db is None or not objs:
            return
        try:
            await self._db.executemany(_UPSERT_SQL, [_row(obj) for obj in objs])
            await self._record_version(max(obj.resource_version for obj in objs))
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

    async def delete(self, key: ObjectKey, resource_version: int) -> None:
        if self._db is None:
            return
        await self._db.execute(
            "DELETE FROM objects WHERE kind = ? AND namespace = ? AND name = ?",
            (key.kind, key.namespace, key.name),
        )
        await self._record_version(resource_version)
        await self._db.commit()

    async def _record_version(self, resource_version: int) -> None:
        assert self._db is not None
        await self._db.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES ('resource_version', ?)",
            (resource_version,),
        )


def _row(obj: KubeObject) -> tuple[str, str, str, int, str]:
    return (obj.kind, obj.namespace, obj.name, obj.resource_version, json.dumps(obj.to_dict(), default=str))
