"""Identifier mapping store.

The only component that knows both identifier spaces. Each row associates
``(entity_type, local_id, user_id)`` with a ``remote_id``; two unique
indexes keep the association a bijection per entity type and user.

Lookups that find nothing return None, which means "not yet synced". Any
SQLite failure is raised as ``MappingUnavailableError`` so callers can tell
"not synced" apart from "could not ask".
"""

import asyncio
import contextlib
import logging
import sqlite3
from pathlib import Path
from typing import List, Optional

from labbook.errors import MappingUnavailableError
from labbook.types import EntityType, IdMapping, parse_datetime, to_iso, utc_now

from .schema import init_db

logger = logging.getLogger(__name__)


class IdentifierMappingStore:
    """Persistent local ↔ remote id table, partitioned by (entity type, user)."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            init_db(conn)

    @contextlib.contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            logger.warning(f"Mapping store unavailable: {e}")
            raise MappingUnavailableError(f"Mapping unavailable: {e}") from e

    @staticmethod
    def _row_to_mapping(row: sqlite3.Row) -> IdMapping:
        return IdMapping(
            entity_type=EntityType(row["entity_type"]),
            local_id=row["local_id"],
            remote_id=row["remote_id"],
            user_id=row["user_id"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    # === Thread-side Operations ===

    def _store_sync(self, entity_type: str, local_id: int, remote_id: str, user_id: str) -> None:
        now = to_iso(utc_now())
        with self._connect() as conn:
            existing = conn.execute(
                """SELECT created_at FROM id_mappings
                   WHERE entity_type = ? AND local_id = ? AND remote_id = ? AND user_id = ?""",
                (entity_type, local_id, remote_id, user_id),
            ).fetchone()
            # Drop rows that would break the bijection on either key
            conn.execute(
                """DELETE FROM id_mappings
                   WHERE entity_type = ? AND user_id = ? AND (local_id = ? OR remote_id = ?)""",
                (entity_type, user_id, local_id, remote_id),
            )
            conn.execute(
                """INSERT INTO id_mappings
                   (entity_type, local_id, remote_id, user_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    entity_type,
                    local_id,
                    remote_id,
                    user_id,
                    existing["created_at"] if existing else now,
                    now,
                ),
            )

    def _select_one_sync(self, column: str, entity_type: str, key_column: str, key, user_id: str):
        with self._connect() as conn:
            row = conn.execute(
                f"""SELECT {column} FROM id_mappings
                    WHERE entity_type = ? AND {key_column} = ? AND user_id = ?""",
                (entity_type, key, user_id),
            ).fetchone()
        return row[column] if row else None

    def _delete_sync(self, entity_type: str, key_column: str, key, user_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM id_mappings WHERE entity_type = ? AND {key_column} = ? AND user_id = ?",
                (entity_type, key, user_id),
            )
            return cursor.rowcount

    def _all_sync(self, entity_type: str, user_id: str) -> List[IdMapping]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM id_mappings WHERE entity_type = ? AND user_id = ?
                   ORDER BY local_id""",
                (entity_type, user_id),
            ).fetchall()
        return [self._row_to_mapping(row) for row in rows]

    def _count_sync(self, user_id: str) -> dict:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT entity_type, COUNT(*) AS count FROM id_mappings
                   WHERE user_id = ? GROUP BY entity_type""",
                (user_id,),
            ).fetchall()
        return {row["entity_type"]: row["count"] for row in rows}

    # === Public API ===

    async def store(self, entity_type: EntityType, local_id: int, remote_id: str, user_id: str) -> None:
        """Idempotent upsert; the latest call for either key wins."""
        await self._run(self._store_sync, entity_type.value, local_id, remote_id, user_id)

    async def remote_id_for(self, entity_type: EntityType, local_id: int, user_id: str) -> Optional[str]:
        return await self._run(
            self._select_one_sync, "remote_id", entity_type.value, "local_id", local_id, user_id
        )

    async def local_id_for(self, entity_type: EntityType, remote_id: str, user_id: str) -> Optional[int]:
        return await self._run(
            self._select_one_sync, "local_id", entity_type.value, "remote_id", remote_id, user_id
        )

    async def delete_by_local_id(self, entity_type: EntityType, local_id: int, user_id: str) -> int:
        return await self._run(self._delete_sync, entity_type.value, "local_id", local_id, user_id)

    async def delete_by_remote_id(self, entity_type: EntityType, remote_id: str, user_id: str) -> int:
        return await self._run(self._delete_sync, entity_type.value, "remote_id", remote_id, user_id)

    async def all_for_type(self, entity_type: EntityType, user_id: str) -> List[IdMapping]:
        return await self._run(self._all_sync, entity_type.value, user_id)

    async def count_for_user(self, user_id: str) -> dict:
        """Mapping counts keyed by entity type value."""
        return await self._run(self._count_sync, user_id)
