"""SQLite record store: the single source of truth for memories.

The working database is an in-memory aiosqlite connection. On open it is
populated from the on-disk snapshot through SQLite's online backup API;
:meth:`MemoryStore.flush` writes a compacted copy back with ``VACUUM INTO``
and an atomic rename. Writes are counted and a flush is triggered every
``flush_threshold`` writes, so a crash loses at most that many writes.
"""
from __future__ import annotations

import json
import os
import sqlite3
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite

from rulebook_core.errors import StorageUnavailableError
from rulebook_core.logging import get_logger

from rulebook_memory.types import (
    MemoryRecord,
    MemorySession,
    MemoryType,
    RecordSummary,
    SessionStatus,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

logger = get_logger("memory.store")

DEFAULT_FLUSH_THRESHOLD = 50

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    project TEXT NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    session_id TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    accessed_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_project_created
    ON memories (project, created_at);
CREATE INDEX IF NOT EXISTS idx_memories_accessed
    ON memories (accessed_at, created_at);
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    project TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    started_at REAL NOT NULL,
    ended_at REAL,
    summary TEXT,
    tool_calls INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions (status, project);
"""

_RECORD_COLUMNS = (
    "id, type, title, content, project, tags, session_id,"
    " created_at, updated_at, accessed_at"
)
_SUMMARY_COLUMNS = "id, title, type, project, created_at"
_SESSION_COLUMNS = (
    "id, project, status, started_at, ended_at, summary, tool_calls"
)

# id and project are stored again in the primary-key and project indexes.
_FOOTPRINT_COLUMNS = (
    "id, 2 * length(CAST(id AS BLOB)) + length(CAST(type AS BLOB))"
    " + length(CAST(title AS BLOB)) + length(CAST(content AS BLOB))"
    " + 2 * length(CAST(project AS BLOB)) + length(CAST(tags AS BLOB))"
    " + COALESCE(length(CAST(session_id AS BLOB)), 0)"
)
# Timestamps, rowids, record headers and cell pointers.
_ROW_OVERHEAD = 64

# SQLite's default bound-parameter limit is 999 on older builds.
_IN_CHUNK = 500


def _row_to_record(row: Any) -> MemoryRecord:
    return MemoryRecord(
        id=row[0],
        type=MemoryType(row[1]),
        title=row[2],
        content=row[3],
        project=row[4],
        tags=tuple(json.loads(row[5])),
        session_id=row[6],
        created_at=row[7],
        updated_at=row[8],
        accessed_at=row[9],
    )


def _row_to_summary(row: Any) -> RecordSummary:
    return RecordSummary(
        id=row[0], title=row[1], type=MemoryType(row[2]),
        project=row[3], created_at=row[4],
    )


def _row_to_session(row: Any) -> MemorySession:
    return MemorySession(
        id=row[0],
        project=row[1],
        status=SessionStatus(row[2]),
        started_at=row[3],
        ended_at=row[4],
        summary=row[5],
        tool_calls=row[6],
    )


class MemoryStore:
    """Records and sessions in SQLite, flushed to a single snapshot file.

    Create with :meth:`create`, which loads or initializes the snapshot::

        async with await MemoryStore.create(".rulebook/memory/memory.db") as store:
            await store.save_record(record)
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        db_path: Path,
        flush_threshold: int = DEFAULT_FLUSH_THRESHOLD,
    ) -> None:
        self._conn = conn
        self._path = db_path
        self._flush_threshold = flush_threshold
        self._dirty = 0
        self._closed = False

    @classmethod
    async def create(
        cls,
        db_path: Path | str,
        flush_threshold: int = DEFAULT_FLUSH_THRESHOLD,
    ) -> MemoryStore:
        """Open the store at *db_path*, creating the file if needed.

        Raises:
            StorageUnavailableError: If the snapshot exists but cannot be
                read as a SQLite database, or the directory is not
                writable.
        """
        path = Path(db_path)
        conn = await aiosqlite.connect(":memory:")
        try:
            if path.exists():
                source = await aiosqlite.connect(str(path))
                try:
                    await source.backup(conn)
                finally:
                    await source.close()
                logger.debug("Loaded memory snapshot from %s", path)
            await conn.executescript(_SCHEMA)
            await conn.commit()
        except (sqlite3.Error, OSError) as exc:
            await conn.close()
            raise StorageUnavailableError(
                f"Cannot open memory database {path}: {exc}"
            ) from exc

        store = cls(conn, path, flush_threshold)
        try:
            await store._write_snapshot()
        except StorageUnavailableError:
            await conn.close()
            raise
        return store

    async def __aenter__(self) -> MemoryStore:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def pending_writes(self) -> int:
        return self._dirty

    # ── Persistence ─────────────────────────────────────────────────

    async def _write_snapshot(self) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.unlink(missing_ok=True)
            await self._conn.execute("VACUUM INTO ?", (str(tmp),))
            os.replace(tmp, self._path)
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailableError(
                f"Cannot write memory database {self._path}: {exc}"
            ) from exc
        self._dirty = 0

    async def flush(self) -> None:
        """Write the snapshot if there are unflushed writes."""
        if self._dirty == 0 and self._path.exists():
            return
        pending = self._dirty
        await self._write_snapshot()
        logger.debug("Flushed %d writes to %s", pending, self._path)

    async def _wrote(self, count: int = 1) -> None:
        await self._conn.commit()
        self._dirty += count
        if self._dirty >= self._flush_threshold:
            await self.flush()

    async def close(self) -> None:
        if self._closed:
            return
        try:
            await self.flush()
        finally:
            self._closed = True
            await self._conn.close()

    async def size_bytes(self) -> int:
        """Bytes occupied by live pages (free pages excluded)."""
        values = []
        for pragma in ("page_count", "freelist_count", "page_size"):
            async with self._conn.execute(f"PRAGMA {pragma}") as cursor:
                row = await cursor.fetchone()
                values.append(row[0] if row else 0)
        page_count, freelist, page_size = values
        return (page_count - freelist) * page_size

    async def compact(self) -> None:
        await self._conn.execute("VACUUM")

    # ── Records ─────────────────────────────────────────────────────

    async def save_record(self, record: MemoryRecord) -> None:
        """Insert *record*, or update it in place keeping ``created_at``."""
        await self._conn.execute(
            f"INSERT INTO memories ({_RECORD_COLUMNS})"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
            " ON CONFLICT(id) DO UPDATE SET"
            " type = excluded.type, title = excluded.title,"
            " content = excluded.content, project = excluded.project,"
            " tags = excluded.tags, session_id = excluded.session_id,"
            " updated_at = excluded.updated_at,"
            " accessed_at = excluded.accessed_at",
            (
                record.id, record.type.value, record.title, record.content,
                record.project, json.dumps(list(record.tags)),
                record.session_id, record.created_at, record.updated_at,
                record.accessed_at,
            ),
        )
        await self._wrote()

    async def update_record(self, record: MemoryRecord) -> bool:
        cursor = await self._conn.execute(
            "UPDATE memories SET type = ?, title = ?, content = ?, tags = ?,"
            " updated_at = ? WHERE id = ?",
            (
                record.type.value, record.title, record.content,
                json.dumps(list(record.tags)), record.updated_at, record.id,
            ),
        )
        updated = cursor.rowcount > 0
        await cursor.close()
        if updated:
            await self._wrote()
        return updated

    async def get_record(self, record_id: str) -> MemoryRecord | None:
        async with self._conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM memories WHERE id = ?",
            (record_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def _select_in(
        self, columns: str, ids: list[str]
    ) -> list[Any]:
        rows: list[Any] = []
        for start in range(0, len(ids), _IN_CHUNK):
            chunk = ids[start:start + _IN_CHUNK]
            marks = ", ".join("?" * len(chunk))
            async with self._conn.execute(
                f"SELECT {columns} FROM memories WHERE id IN ({marks})",
                chunk,
            ) as cursor:
                rows.extend(await cursor.fetchall())
        return rows

    async def get_records(self, ids: Iterable[str]) -> list[MemoryRecord]:
        """Fetch records in the order requested; unknown ids are omitted."""
        wanted = list(dict.fromkeys(ids))
        found = {
            row[0]: _row_to_record(row)
            for row in await self._select_in(_RECORD_COLUMNS, wanted)
        }
        return [found[i] for i in wanted if i in found]

    async def get_summaries(self, ids: Iterable[str]) -> dict[str, RecordSummary]:
        wanted = list(dict.fromkeys(ids))
        return {
            row[0]: _row_to_summary(row)
            for row in await self._select_in(_SUMMARY_COLUMNS, wanted)
        }

    async def record_footprints(self, ids: Iterable[str]) -> dict[str, int]:
        """Approximate bytes each record occupies across table and indexes."""
        wanted = list(dict.fromkeys(ids))
        return {
            row[0]: row[1] + _ROW_OVERHEAD
            for row in await self._select_in(_FOOTPRINT_COLUMNS, wanted)
        }

    async def touch(self, ids: Iterable[str], when: float | None = None) -> None:
        """Bump ``accessed_at`` for *ids*."""
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return
        when = time.time() if when is None else when
        await self._conn.executemany(
            "UPDATE memories SET accessed_at = ? WHERE id = ?",
            [(when, record_id) for record_id in wanted],
        )
        await self._wrote()

    async def delete_record(self, record_id: str) -> bool:
        cursor = await self._conn.execute(
            "DELETE FROM memories WHERE id = ?", (record_id,)
        )
        deleted = cursor.rowcount > 0
        await cursor.close()
        if deleted:
            await self._wrote()
        return deleted

    async def list_recent(
        self,
        limit: int = 20,
        offset: int = 0,
        project: str | None = None,
        type: MemoryType | None = None,
    ) -> list[MemoryRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if project is not None:
            clauses.append("project = ?")
            params.append(project)
        if type is not None:
            clauses.append("type = ?")
            params.append(type.value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM memories{where}"
            " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def iter_records(self) -> AsyncIterator[MemoryRecord]:
        """Yield every record, oldest first."""
        async with self._conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM memories"
            " ORDER BY created_at ASC, rowid ASC"
        ) as cursor:
            async for row in cursor:
                yield _row_to_record(row)

    async def record_ids(self) -> set[str]:
        async with self._conn.execute("SELECT id FROM memories") as cursor:
            return {row[0] for row in await cursor.fetchall()}

    async def timeline_around(
        self, anchor_id: str, before: int, after: int
    ) -> tuple[list[RecordSummary], RecordSummary, list[RecordSummary]] | None:
        """Up to *before* / *after* neighbours on each side of the anchor.

        Neighbours share the anchor's project and are ordered by
        ``created_at`` with insertion order breaking ties. Returns
        ``None`` if the anchor does not exist.
        """
        async with self._conn.execute(
            f"SELECT {_SUMMARY_COLUMNS}, rowid FROM memories WHERE id = ?",
            (anchor_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        anchor = _row_to_summary(row)
        key = (anchor.project, anchor.created_at, anchor.created_at, row[5])

        async with self._conn.execute(
            f"SELECT {_SUMMARY_COLUMNS} FROM memories WHERE project = ?"
            " AND (created_at < ? OR (created_at = ? AND rowid < ?))"
            " ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (*key, before),
        ) as cursor:
            earlier = [_row_to_summary(r) for r in await cursor.fetchall()]
        async with self._conn.execute(
            f"SELECT {_SUMMARY_COLUMNS} FROM memories WHERE project = ?"
            " AND (created_at > ? OR (created_at = ? AND rowid > ?))"
            " ORDER BY created_at ASC, rowid ASC LIMIT ?",
            (*key, after),
        ) as cursor:
            later = [_row_to_summary(r) for r in await cursor.fetchall()]
        earlier.reverse()
        return earlier, anchor, later

    async def eviction_candidates(self, batch_size: int) -> list[str]:
        """Least recently accessed ids that may be evicted.

        Decisions and records of active sessions are never returned.
        """
        async with self._conn.execute(
            "SELECT id FROM memories"
            " WHERE type != ?"
            " AND (session_id IS NULL OR session_id NOT IN"
            "      (SELECT id FROM sessions WHERE status = ?))"
            " ORDER BY accessed_at ASC, created_at ASC, rowid ASC LIMIT ?",
            (MemoryType.DECISION.value, SessionStatus.ACTIVE.value, batch_size),
        ) as cursor:
            return [row[0] for row in await cursor.fetchall()]

    async def count_records(self, project: str | None = None) -> int:
        if project is None:
            sql, params = "SELECT COUNT(*) FROM memories", ()
        else:
            sql, params = "SELECT COUNT(*) FROM memories WHERE project = ?", (project,)
        async with self._conn.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def oldest_created_at(self) -> float | None:
        async with self._conn.execute(
            "SELECT MIN(created_at) FROM memories"
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def newest_created_at(self) -> float | None:
        async with self._conn.execute(
            "SELECT MAX(created_at) FROM memories"
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    # ── Sessions ────────────────────────────────────────────────────

    async def create_session(self, session: MemorySession) -> None:
        await self._conn.execute(
            f"INSERT INTO sessions ({_SESSION_COLUMNS})"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                session.id, session.project, session.status.value,
                session.started_at, session.ended_at, session.summary,
                session.tool_calls,
            ),
        )
        await self._wrote()

    async def get_session(self, session_id: str) -> MemorySession | None:
        async with self._conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_session(row) if row else None

    async def end_session(
        self,
        session_id: str,
        summary: str | None = None,
        ended_at: float | None = None,
    ) -> MemorySession | None:
        """Mark an active session completed.

        Already-completed sessions are returned unchanged; unknown ids
        return ``None``.
        """
        session = await self.get_session(session_id)
        if session is None or not session.is_active:
            return session
        ended_at = time.time() if ended_at is None else ended_at
        await self._conn.execute(
            "UPDATE sessions SET status = ?, ended_at = ?, summary = ?"
            " WHERE id = ?",
            (SessionStatus.COMPLETED.value, ended_at, summary, session_id),
        )
        await self._wrote()
        return await self.get_session(session_id)

    async def increment_tool_calls(self, session_id: str) -> bool:
        cursor = await self._conn.execute(
            "UPDATE sessions SET tool_calls = tool_calls + 1"
            " WHERE id = ? AND status = ?",
            (session_id, SessionStatus.ACTIVE.value),
        )
        updated = cursor.rowcount > 0
        await cursor.close()
        if updated:
            await self._wrote()
        return updated

    async def active_sessions(
        self, project: str | None = None
    ) -> list[MemorySession]:
        sql = f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE status = ?"
        params: tuple[Any, ...] = (SessionStatus.ACTIVE.value,)
        if project is not None:
            sql += " AND project = ?"
            params += (project,)
        async with self._conn.execute(
            sql + " ORDER BY started_at DESC, rowid DESC", params
        ) as cursor:
            return [_row_to_session(row) for row in await cursor.fetchall()]

    async def count_sessions(self) -> int:
        async with self._conn.execute("SELECT COUNT(*) FROM sessions") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
