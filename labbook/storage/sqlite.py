"""SQLite storage backend for labbook.

Local-first storage with:
- One table per entity type, cascading deletes down the hierarchy
- Per-operation connections (no shared connection across threads)
- An async surface that runs SQLite work off the event loop
- Change notification feeding live ``watch`` streams
"""

import asyncio
import contextlib
import logging
import sqlite3
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from labbook.errors import LocalStoreError
from labbook.types import EntityType, ReminderEntityType, entity_type_of, to_iso, utc_now
from labbook.utils import get_labbook_home

from .records import CHILD_TYPES, PARENT_TYPE, TABLES, local_parent_filter, subtree_types
from .schema import init_db, validate_table_name

logger = logging.getLogger(__name__)


class SQLiteStorage:
    """SQLite-based local store for every research entity type.

    The store is the source of truth for immediate reads and writes. Every
    public coroutine either completes its write durably or raises
    ``LocalStoreError``; it never partially applies a mutation.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else get_labbook_home() / "labbook.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._subscribers: Dict[EntityType, Set[asyncio.Queue]] = {t: set() for t in EntityType}
        self._init_db()

    # === Connection Handling ===

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn)

    def close(self):
        """Connections are per-operation; kept for API symmetry."""

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise LocalStoreError(f"Local store failure: {e}") from e

    # === Change Notification ===

    def subscribe(self, entity_type: EntityType) -> asyncio.Queue:
        """Register for change signals on one entity type."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[entity_type].add(queue)
        return queue

    def unsubscribe(self, entity_type: EntityType, queue: asyncio.Queue) -> None:
        self._subscribers[entity_type].discard(queue)

    def _notify(self, *entity_types: EntityType) -> None:
        for entity_type in entity_types:
            for queue in self._subscribers[entity_type]:
                # A pending signal already forces a re-read; don't pile up more
                if queue.empty():
                    queue.put_nowait(entity_type)

    # === Sync (thread-side) Operations ===

    def _insert_sync(self, record: Any) -> int:
        spec = TABLES[entity_type_of(record)]
        table = validate_table_name(spec.table)
        row = spec.to_row(record)
        columns = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
            return cursor.lastrowid

    def _update_sync(self, record: Any) -> bool:
        spec = TABLES[entity_type_of(record)]
        table = validate_table_name(spec.table)
        row = spec.to_row(record)
        assignments = ", ".join(f"{column} = ?" for column in row)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                (*row.values(), record.id),
            )
            return cursor.rowcount > 0

    def _get_sync(self, entity_type: EntityType, local_id: int) -> Optional[Any]:
        spec = TABLES[entity_type]
        table = validate_table_name(spec.table)
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (local_id,)).fetchone()
        return spec.from_row(row) if row else None

    def _select_sync(
        self,
        entity_type: EntityType,
        filters: Dict[str, Any],
        active_only: bool = False,
        user_id: Optional[str] = None,
    ) -> List[Any]:
        spec = TABLES[entity_type]
        table = validate_table_name(spec.table)
        clauses = [f"{column} = ?" for column in filters]
        params: List[Any] = list(filters.values())
        if active_only:
            clauses.append("archived = 0")
        if user_id is not None:
            # Records created while signed out belong to whoever syncs them first
            clauses.append("(user_id = ? OR user_id IS NULL)")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} {where} ORDER BY created_at DESC, id DESC", params
            ).fetchall()
        return [spec.from_row(row) for row in rows]

    def _child_ids(
        self, conn: sqlite3.Connection, child_type: EntityType, parent_type: EntityType, parent_id: int
    ) -> List[int]:
        table = validate_table_name(TABLES[child_type].table)
        filters = local_parent_filter(child_type, parent_type, parent_id)
        where = " AND ".join(f"{column} = ?" for column in filters)
        rows = conn.execute(f"SELECT id FROM {table} WHERE {where}", tuple(filters.values()))
        return [row["id"] for row in rows.fetchall()]

    def _descendants_in(
        self, conn: sqlite3.Connection, entity_type: EntityType, local_id: int
    ) -> Dict[EntityType, List[int]]:
        found: Dict[EntityType, List[int]] = {}
        stack = [(entity_type, local_id)]
        while stack:
            parent_type, parent_id = stack.pop()
            for child_type in CHILD_TYPES[parent_type]:
                ids = self._child_ids(conn, child_type, parent_type, parent_id)
                if not ids:
                    continue
                found.setdefault(child_type, []).extend(ids)
                stack.extend((child_type, child_id) for child_id in ids)
        return found

    def _descendants_sync(self, entity_type: EntityType, local_id: int) -> Dict[EntityType, List[int]]:
        with self._connect() as conn:
            return self._descendants_in(conn, entity_type, local_id)

    def _delete_sync(self, entity_type: EntityType, local_id: int) -> bool:
        table = validate_table_name(TABLES[entity_type].table)
        with self._connect() as conn:
            tree = self._descendants_in(conn, entity_type, local_id)
            # Reminders have no FK to their polymorphic parent
            reminder_parents = [(entity_type, local_id)] + [
                (t, i) for t, ids in tree.items() if t != EntityType.REMINDER for i in ids
            ]
            for parent_type, parent_id in reminder_parents:
                if EntityType.REMINDER not in CHILD_TYPES[parent_type]:
                    continue
                conn.execute(
                    "DELETE FROM reminder_settings WHERE entity_type = ? AND entity_id = ?",
                    (ReminderEntityType.for_entity(parent_type).value, parent_id),
                )
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (local_id,))
            return cursor.rowcount > 0

    def _count_sync(self, entity_type: EntityType) -> int:
        table = validate_table_name(TABLES[entity_type].table)
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def _get_meta_sync(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_meta_sync(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, to_iso(utc_now())),
            )

    # === Async Surface ===

    async def insert(self, record: Any) -> int:
        """Insert a record and return its new local id (also set on the record)."""
        now = utc_now()
        if record.created_at is None:
            record.created_at = now
        if record.updated_at is None:
            record.updated_at = record.created_at
        record.id = await self._run(self._insert_sync, record)
        self._notify(entity_type_of(record))
        return record.id

    async def update(self, record: Any) -> bool:
        """Overwrite a record by id. Returns False if it no longer exists."""
        if record.id is None:
            raise LocalStoreError("Cannot update a record without a local id")
        updated = await self._run(self._update_sync, record)
        if updated:
            self._notify(entity_type_of(record))
        return updated

    async def delete(self, entity_type: EntityType, local_id: int) -> bool:
        """Delete a record and everything below it."""
        deleted = await self._run(self._delete_sync, entity_type, local_id)
        if deleted:
            self._notify(*subtree_types(entity_type))
        return deleted

    async def get_by_id(self, entity_type: EntityType, local_id: int) -> Optional[Any]:
        return await self._run(self._get_sync, entity_type, local_id)

    async def list_for_parent(
        self,
        entity_type: EntityType,
        parent_id: Optional[int] = None,
        *,
        parent_type: Optional[EntityType] = None,
        active_only: bool = False,
    ) -> List[Any]:
        """Children of one local parent, newest first. Projects ignore the parent."""
        parent_type = parent_type or PARENT_TYPE.get(entity_type)
        filters = local_parent_filter(entity_type, parent_type, parent_id)
        return await self._run(self._select_sync, entity_type, filters, active_only)

    async def list_for_user(self, entity_type: EntityType, user_id: str) -> List[Any]:
        """Every record of a type owned by ``user_id`` (or not yet owned)."""
        return await self._run(self._select_sync, entity_type, {}, False, user_id)

    async def find(self, entity_type: EntityType, **filters: Any) -> List[Any]:
        """Records matching exact column values."""
        return await self._run(self._select_sync, entity_type, filters)

    async def descendants(self, entity_type: EntityType, local_id: int) -> Dict[EntityType, List[int]]:
        """Local ids of every record below ``local_id``, grouped by type."""
        return await self._run(self._descendants_sync, entity_type, local_id)

    async def active_reminders(self) -> List[Any]:
        """Enabled, non-archived reminder settings (for the reminder scheduler)."""
        return await self._run(
            self._select_sync, EntityType.REMINDER, {"is_enabled": 1}, True
        )

    async def count(self, entity_type: EntityType) -> int:
        return await self._run(self._count_sync, entity_type)

    async def get_meta(self, key: str) -> Optional[str]:
        return await self._run(self._get_meta_sync, key)

    async def set_meta(self, key: str, value: str) -> None:
        await self._run(self._set_meta_sync, key, value)

    async def watch(
        self,
        entity_type: EntityType,
        parent_id: Optional[int] = None,
        *,
        parent_type: Optional[EntityType] = None,
        active_only: bool = False,
    ) -> AsyncIterator[List[Any]]:
        """Live snapshots of a parent's children.

        Yields the current snapshot immediately and a fresh one after every
        committed change to the entity type. Runs until the consumer stops
        iterating; closing the generator unsubscribes.
        """
        queue = self.subscribe(entity_type)
        try:
            while True:
                yield await self.list_for_parent(
                    entity_type, parent_id, parent_type=parent_type, active_only=active_only
                )
                await queue.get()
        finally:
            self.unsubscribe(entity_type, queue)
